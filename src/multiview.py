"""
Multiview Composer

Combines up to four streams into one grid with a single FFmpeg process and
serves the result as HLS from the multiview directory. The FFmpeg command
line is built by a pure function so the filter graph can be checked without
starting anything.
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

import m3u8

from config import settings
from errors import EncoderError
from models import MultiviewSpec, MultiviewStatus, MultiviewStatusResponse
from storage import ensure_directory, purge_directory

logger = logging.getLogger(__name__)

XSTACK_LAYOUTS = ["0_0", "w0_0", "0_h0", "w0_h0"]
VIDEO_BITRATE_PER_STREAM = 1040  # kbit/s
HLS_SEGMENT_SECONDS = 5
HLS_WINDOW_SEGMENTS = 12
MAX_DURATION = "6:00:00"


@dataclass
class FilterNode:
    inputs: List[str]
    name: str
    outputs: List[str]

    def render(self) -> str:
        ins = "".join(f"[{label}]" for label in self.inputs)
        outs = "".join(f"[{label}]" for label in self.outputs)
        return f"{ins}{self.name}{outs}"


@dataclass
class ProcessInvocation:
    executable: str
    input_args: List[str] = field(default_factory=list)
    filter_graph: List[FilterNode] = field(default_factory=list)
    output_args: List[str] = field(default_factory=list)
    output_path: str = ""

    @property
    def filter_complex(self) -> str:
        return ";".join(node.render() for node in self.filter_graph)

    @property
    def args(self) -> List[str]:
        args = [self.executable] + self.input_args
        if self.filter_graph:
            args += ["-filter_complex", self.filter_complex]
        return args + self.output_args + [self.output_path]


def _seconds(value: float) -> str:
    return f"{value:g}"


def build_invocation(spec: MultiviewSpec,
                     output_dir: str,
                     master_name: str,
                     encoder: str = "libx264",
                     executable: str = "ffmpeg") -> ProcessInvocation:
    """
    Build the FFmpeg invocation for a multiview spec.

    Args:
        spec: Validated multiview request
        output_dir: Directory receiving the HLS playlists and segments
        master_name: Master playlist file name
        encoder: Video encoder used when several streams are stacked
        executable: FFmpeg binary

    Returns:
        ProcessInvocation with the argument list and filter graph as data
    """
    count = spec.stream_count
    input_args: List[str] = []
    graph: List[FilterNode] = []
    stacked: List[str] = []
    audio_inputs: List[int] = []
    sync = list(spec.sync)

    def add_input(url: str, seek: Optional[float] = None):
        input_args.extend(["-thread_queue_size", "4096"])
        if not spec.faster:
            input_args.append("-re")
        if seek:
            input_args.extend(["-ss", _seconds(seek)])
        input_args.extend(["-i", url])

    for i, url in enumerate(spec.streams):
        add_input(url)
        if count > 1:
            graph.append(FilterNode([f"{i}:v"], "setpts=PTS-STARTPTS", [f"v{i}"]))
            stacked.append(f"v{i}")
        if "audio_track=none" not in url:
            audio_inputs.append(i)

    if spec.audio_url:
        seek = spec.audio_url_seek
        if seek < 0:
            logger.info(f"Trimming alternate audio by {seek} seconds")
            add_input(spec.audio_url, seek=-seek)
            sync.append(0.0)
        else:
            add_input(spec.audio_url)
            sync.append(seek)
        audio_inputs.append(count)

    if count > 1:
        layout = "|".join(XSTACK_LAYOUTS[:count])
        graph.append(FilterNode(stacked, f"xstack=inputs={count}:layout={layout}:fill=black", ["out"]))
        video_map = "[out]"
    else:
        video_map = "0:v"

    for position, index in enumerate(audio_inputs):
        offset = sync[index] if index < len(sync) else 0
        adjust = ""
        if offset > 0:
            logger.info(f"Delaying audio for stream {index + 1} by {offset} seconds")
            adjust = f"adelay=delays={int(round(offset * 1000))}:all=1,"
        elif offset < 0:
            logger.info(f"Trimming audio for stream {index + 1} by {offset} seconds")
            adjust = f"atrim=start={_seconds(-offset)}s,"
        # Resampling fills gaps with silence; padding stretches audio to the video length
        graph.append(FilterNode([f"{index}:a:0"],
                                f"aresample=async=1:first_pts=0,{adjust}asetpts=PTS-STARTPTS,apad",
                                [f"out{position}"]))

    output_args = ["-map", video_map]
    var_stream_map = "v:0,agroup:aac"
    for position in range(len(audio_inputs)):
        output_args.extend(["-map", f"[out{position}]"])
        var_stream_map += f" a:{position},agroup:aac,language:ENG"
        if position == 0:
            var_stream_map += ",default:yes"

    if count > 1:
        output_args.extend([
            "-c:v", encoder,
            "-pix_fmt:v", "yuv420p",
            "-preset:v", "superfast",
            "-r:v", "30",
            "-g:v", "150",
            "-keyint_min:v", "150",
            "-b:v", f"{VIDEO_BITRATE_PER_STREAM * count}k",
        ])
    else:
        output_args.extend(["-c:v", "copy"])

    hls_flags = "independent_segments+discont_start+program_date_time"
    list_size = HLS_WINDOW_SEGMENTS
    if spec.dvr:
        list_size = 0
    else:
        hls_flags = "delete_segments+" + hls_flags

    output_args.extend([
        "-c:a", "aac",
        "-sn",
        "-t", MAX_DURATION,
        "-f", "hls",
        "-hls_time", str(HLS_SEGMENT_SECONDS),
        "-hls_list_size", str(list_size),
        "-hls_allow_cache", "0",
        "-hls_flags", hls_flags,
    ])
    if spec.dvr:
        output_args.extend(["-hls_playlist_type", "event"])
    output_args.extend([
        "-start_number", "1",
        "-hls_segment_filename", os.path.join(output_dir, "stream_%v_%d.ts"),
        "-var_stream_map", var_stream_map,
        "-master_pl_name", master_name,
        "-y",
    ])

    return ProcessInvocation(
        executable=executable,
        input_args=input_args,
        filter_graph=graph,
        output_args=output_args,
        output_path=os.path.join(output_dir, "stream-%v.m3u8"),
    )


class MultiviewComposer:
    """Owns the one multiview FFmpeg process."""

    def __init__(self,
                 output_dir: Optional[str] = None,
                 master_name: Optional[str] = None,
                 encoder: Optional[str] = None,
                 executable: Optional[str] = None,
                 restart_delay: float = 5.0,
                 max_runtime: Optional[float] = None):
        self.output_dir = output_dir or settings.MULTIVIEW_DIR
        self.master_name = master_name or settings.MULTIVIEW_MASTER_NAME
        self.encoder = encoder or settings.FFMPEG_ENCODER
        self.executable = executable or settings.FFMPEG_PATH
        self.restart_delay = restart_delay
        self.max_runtime = max_runtime or settings.MULTIVIEW_MAX_RUNTIME
        self.process: Optional[asyncio.subprocess.Process] = None
        self.spec: Optional[MultiviewSpec] = None
        self.status = MultiviewStatus.IDLE
        self._lock = asyncio.Lock()
        self._tasks: List[asyncio.Task] = []

    @property
    def master_path(self) -> str:
        return os.path.join(self.output_dir, self.master_name)

    async def start(self, spec: MultiviewSpec) -> str:
        """Replace any running composition with a new one."""
        async with self._lock:
            was_running = await self._terminate()
            purge_directory(self.output_dir)
            if was_running and self.restart_delay:
                # Give players a moment to notice the old stream is gone
                await asyncio.sleep(self.restart_delay)

            self.status = MultiviewStatus.STARTING
            self.spec = spec
            invocation = build_invocation(spec, self.output_dir, self.master_name, self.encoder, self.executable)
            ensure_directory(self.output_dir)
            logger.info(f"FFmpeg command: {' '.join(invocation.args)}")

            try:
                self.process = await asyncio.create_subprocess_exec(
                    *invocation.args,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.PIPE
                )
            except OSError as e:
                self.status = MultiviewStatus.CRASHED
                self.process = None
                raise EncoderError(f"Failed to start FFmpeg: {e}")

            self.status = MultiviewStatus.RUNNING
            logger.info(f"🎬 Multiview started with {spec.stream_count} stream(s), PID: {self.process.pid}")
            self._tasks = [
                asyncio.create_task(self._log_stderr(self.process)),
                asyncio.create_task(self._watch(self.process)),
            ]
            return "started"

    async def stop(self) -> str:
        async with self._lock:
            if self.process is not None:
                self.status = MultiviewStatus.STOPPING
            await self._terminate()
            purge_directory(self.output_dir)
            self.status = MultiviewStatus.IDLE
            self.spec = None
            return "stopped"

    async def _terminate(self) -> bool:
        """Stop the current process if there is one; True if it was still running."""
        process = self.process
        self.process = None
        for task in self._tasks:
            task.cancel()
        self._tasks = []
        if process is None or process.returncode is not None:
            return False

        logger.info(f"Terminating multiview FFmpeg process {process.pid}")
        try:
            process.terminate()
            await asyncio.wait_for(process.wait(), timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("FFmpeg process didn't terminate cleanly, killing it")
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
        except ProcessLookupError:
            pass
        return True

    async def _log_stderr(self, process: asyncio.subprocess.Process):
        if not process.stderr:
            return
        level = logging.INFO if settings.FFMPEG_LOGGING else logging.DEBUG
        try:
            while True:
                line = await process.stderr.readline()
                if not line:
                    break
                line_str = line.decode('utf-8', errors='ignore').strip()
                if line_str:
                    logger.log(level, f"FFmpeg [multiview]: {line_str}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error reading FFmpeg stderr: {e}")

    async def _watch(self, process: asyncio.subprocess.Process):
        try:
            returncode = await asyncio.wait_for(process.wait(), timeout=self.max_runtime)
        except asyncio.TimeoutError:
            logger.warning(f"Multiview FFmpeg still running after {self.max_runtime}s, killing it")
            process.kill()
            returncode = await process.wait()
        if process is not self.process:
            return
        self.process = None
        if returncode == 0:
            logger.info("Multiview stream ended")
            self.status = MultiviewStatus.IDLE
        else:
            logger.error(f"❌ Multiview FFmpeg exited with code {returncode}")
            self.status = MultiviewStatus.CRASHED
            purge_directory(self.output_dir)

    def is_ready(self) -> bool:
        """True once FFmpeg has written a master playlist listing at least one variant."""
        if not os.path.exists(self.master_path):
            return False
        try:
            playlist = m3u8.load(self.master_path)
        except (OSError, ValueError) as e:
            logger.debug(f"Master playlist not readable yet: {e}")
            return False
        return bool(playlist.playlists)

    def describe(self) -> MultiviewStatusResponse:
        return MultiviewStatusResponse(
            status=self.status,
            pid=self.process.pid if self.process else None,
            streams=list(self.spec.streams) if self.spec else [],
            ready=self.is_ready(),
        )
