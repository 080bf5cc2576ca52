"""
Tests for the cache expiry policies
"""
import os
import sys
from datetime import datetime, timedelta, timezone

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from expiry import (FOREVER, FIVE_MINUTES, ONE_DAY, ONE_HOUR, ONE_MINUTE, airings_expiry, big_inning_live_expiry,
                    big_inning_schedule_expiry, day_data_expiry,
                    gameday_expiry, highlights_expiry, live_date, parse_timestamp,
                    week_data_expiry, yesterday_date)


NOW = datetime(2024, 6, 1, 18, 0, tzinfo=timezone.utc)


def _game(state, game_date="2024-06-01T23:05:00Z", **status):
    return {"gameDate": game_date, "status": dict(abstractGameState=state, **status)}


def _day(*games):
    return {"dates": [{"date": "2024-06-01", "games": list(games)}]}


class TestLiveDate:
    def test_before_cutover_counts_as_previous_day(self):
        assert live_date(datetime(2024, 6, 2, 5, 0, tzinfo=timezone.utc)) == "2024-06-01"

    def test_after_cutover(self):
        assert live_date(datetime(2024, 6, 2, 9, 0, tzinfo=timezone.utc)) == "2024-06-02"

    def test_yesterday(self):
        assert yesterday_date(NOW) == "2024-05-31"

    def test_parse_timestamp_handles_zulu(self):
        assert parse_timestamp("2024-06-01T23:05:00Z") == datetime(2024, 6, 1, 23, 5, tzinfo=timezone.utc)


class TestDayDataExpiry:
    def test_live_game_expires_in_a_minute(self):
        data = _day(_game("Final"), _game("Live", detailedState="In Progress"))
        assert day_data_expiry("2024-06-01", data, NOW) == NOW + ONE_MINUTE

    def test_suspended_game_is_not_live(self):
        data = _day(_game("Live", detailedState="Suspended: Rain"))
        assert day_data_expiry("2024-06-01", data, NOW) != NOW + ONE_MINUTE

    def test_upcoming_tbd_after_final_expires_in_a_minute(self):
        data = _day(_game("Final"), _game("Preview", startTimeTBD=True))
        assert day_data_expiry("2024-06-01", data, NOW) == NOW + ONE_MINUTE

    def test_next_scheduled_game_sets_expiry(self):
        data = _day(_game("Preview", game_date="2024-06-01T23:05:00Z"))
        expected = datetime(2024, 6, 1, 22, 50, tzinfo=timezone.utc)
        assert day_data_expiry("2024-06-01", data, NOW) == expected

    def test_imminent_game_expires_no_sooner_than_a_minute(self):
        data = _day(_game("Preview", game_date="2024-06-01T18:05:00Z"))
        assert day_data_expiry("2024-06-01", data, NOW) == NOW + ONE_MINUTE

    def test_all_final_expires_in_an_hour(self):
        data = _day(_game("Final"), _game("Final"))
        assert day_data_expiry("2024-06-01", data, NOW) == NOW + ONE_HOUR

    def test_future_day_expires_next_morning(self):
        expected = datetime(2024, 6, 2, 10, 0, tzinfo=timezone.utc)
        assert day_data_expiry("2024-06-05", _day(), NOW) == expected

    def test_yesterday_expires_in_an_hour(self):
        assert day_data_expiry("2024-05-31", _day(), NOW) == NOW + ONE_HOUR

    def test_older_days_never_expire(self):
        assert day_data_expiry("2024-05-30", _day(), NOW) == FOREVER
        assert day_data_expiry("2024-05-29", _day(), NOW) == FOREVER


class TestAiringsExpiry:
    def _airings(self, start_date, product_type="VOD", offset=10):
        return {"data": {"Airings": [{
            "startDate": start_date,
            "mediaConfig": {"productType": product_type},
            "milestones": [{"milestoneTime": [{"type": "offset", "start": offset}]}],
        }]}}

    def test_live_today(self):
        data = self._airings("2024-06-01T17:00:00Z", product_type="LIVE")
        assert airings_expiry(data, NOW) == NOW + FIVE_MINUTES

    def test_untrimmed_today(self):
        data = self._airings("2024-06-01T17:00:00Z", offset=1500)
        assert airings_expiry(data, NOW) == NOW + FIVE_MINUTES

    def test_trimmed_today(self):
        data = self._airings("2024-06-01T17:00:00Z", offset=300)
        assert airings_expiry(data, NOW) == NOW + ONE_HOUR

    def test_past_game_never_expires(self):
        data = self._airings("2024-05-20T17:00:00Z")
        assert airings_expiry(data, NOW) == FOREVER

    def test_missing_airings(self):
        assert airings_expiry({"data": {"Airings": []}}, NOW) == NOW + ONE_HOUR


class TestOtherPolicies:
    def test_week_rolls_over_next_day(self):
        assert week_data_expiry("2024-06-01") == datetime(2024, 6, 2, 5, 0, tzinfo=timezone.utc)

    def test_highlights_for_live_game(self):
        data = {"media": {"epg": [{"items": [{"mediaState": "MEDIA_ON"}]}]}}
        assert highlights_expiry("2024-06-01", data, NOW) == NOW + FIVE_MINUTES

    def test_highlights_for_past_game(self):
        assert highlights_expiry("2024-05-01", {}, NOW) == FOREVER

    def test_highlights_for_finished_game_today(self):
        data = {"media": {"epg": [{"items": [{"mediaState": "MEDIA_ARCHIVE"}]}]}}
        assert highlights_expiry("2024-06-01", data, NOW) == NOW + ONE_HOUR

    def test_gameday_live(self):
        data = {"gameData": {"status": {"abstractGameState": "Live", "detailedState": "In Progress"}}}
        assert gameday_expiry(data, NOW) == NOW + FIVE_MINUTES

    def test_gameday_past(self):
        data = {"gameData": {"status": {"abstractGameState": "Final"},
                             "datetime": {"officialDate": "2024-05-01"}}}
        assert gameday_expiry(data, NOW) == FOREVER

    def test_gameday_today_final(self):
        data = {"gameData": {"status": {"abstractGameState": "Final"},
                             "datetime": {"officialDate": "2024-06-01"}}}
        assert gameday_expiry(data, NOW) == NOW + ONE_HOUR


SCHEDULE = {
    "2024-06-01": {"start": "2024-06-01T23:00:00+00:00", "end": "2024-06-02T02:30:00+00:00"},
    "2024-06-03": {"start": "2024-06-03T22:30:00+00:00", "end": "2024-06-04T04:00:00+00:00"},
}


class TestBigInningExpiry:
    def test_schedule_is_read_daily(self):
        assert big_inning_schedule_expiry({}, NOW) == NOW + ONE_DAY

    def test_on_air_holds_past_scheduled_end(self):
        assert big_inning_live_expiry(SCHEDULE, True, "2:30:00", NOW) == \
            datetime(2024, 6, 2, 3, 30, tzinfo=timezone.utc)

    def test_on_air_off_schedule_uses_duration(self):
        assert big_inning_live_expiry({}, True, "2:30:00", NOW) == NOW + timedelta(hours=2, minutes=30)
        assert big_inning_live_expiry({}, True, "soon", NOW) == NOW + ONE_HOUR

    def test_off_air_waits_for_next_start(self):
        assert big_inning_live_expiry(SCHEDULE, False, now=NOW) == datetime(2024, 6, 1, 23, 0, tzinfo=timezone.utc)
        later = datetime(2024, 6, 2, 12, 0, tzinfo=timezone.utc)
        assert big_inning_live_expiry(SCHEDULE, False, now=later) == datetime(2024, 6, 3, 22, 30, tzinfo=timezone.utc)

    def test_off_air_without_upcoming_broadcast(self):
        assert big_inning_live_expiry({}, False, now=NOW) == NOW + ONE_DAY
