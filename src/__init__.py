"""
MLB.tv Gateway
Resolves broadcasts through the account token chain and re-serves them as
local HLS with track filtering, inning/break skipping and multiview.
"""

__version__ = "0.4.0"
__description__ = "Personal MLB.tv gateway re-serving broadcasts as local HLS"
