"""Tests for fantasyyc.sync: phase derivation and ledger reconciliation."""

import pytest

from fantasyyc.contract import STATUS_ACTIVE, STATUS_CANCELLED, STATUS_CREATED, STATUS_FINALIZED
from fantasyyc.sync import (
    CURRENT_KEY,
    FINGERPRINT_KEY,
    DateOutOfRange,
    Phase,
    TournamentClosed,
    TournamentSynchronizer,
    check_scorable,
    derive_phase,
    tournament_dates,
)

DAY = 86400
T0 = 1_700_000_000


@pytest.fixture
def sync(ledger, db):
    return TournamentSynchronizer(ledger, db)


class TestDerivePhase:
    @pytest.mark.parametrize(
        "now,expected",
        [
            (T0 - 1, Phase.CREATED),
            (T0, Phase.REGISTRATION),
            (T0 + DAY, Phase.ACTIVE),
            (T0 + 8 * DAY - 1, Phase.ACTIVE),
            (T0 + 8 * DAY, Phase.ENDED),
        ],
    )
    def test_time_derived(self, now, expected):
        assert derive_phase(T0, T0 + DAY, T0 + 8 * DAY, STATUS_ACTIVE, now) == expected

    def test_ledger_terminal_status_overrides_time(self):
        assert derive_phase(T0, T0 + DAY, T0 + 8 * DAY, STATUS_FINALIZED, T0 + DAY) == Phase.FINALIZED
        assert derive_phase(T0, T0 + DAY, T0 + 8 * DAY, STATUS_CANCELLED, T0) == Phase.CANCELLED

    def test_created_code_carries_no_phase(self):
        assert derive_phase(T0, T0 + DAY, T0 + 8 * DAY, STATUS_CREATED, T0 + DAY) == Phase.ACTIVE


MIDNIGHT = 1_700_006_400  # 2023-11-15 00:00:00 UTC


def _window(start, end, status="active"):
    return {"id": 1, "start_time": start, "end_time": end, "status": status}


class TestPlayWindow:
    def test_end_time_is_exclusive(self):
        assert tournament_dates(_window(MIDNIGHT, MIDNIGHT + 2 * DAY)) == ("2023-11-15", "2023-11-16")

    def test_zero_length_window_is_one_day(self):
        assert tournament_dates(_window(MIDNIGHT + 60, MIDNIGHT + 60)) == ("2023-11-15", "2023-11-15")

    def test_dates_inside_window_accepted(self):
        t = _window(MIDNIGHT, MIDNIGHT + 2 * DAY, status="ended")
        check_scorable(t, "2023-11-15")
        check_scorable(t, "2023-11-16")
        check_scorable(t)

    @pytest.mark.parametrize("date", ["2023-11-14", "2023-11-17"])
    def test_dates_outside_window_refused(self, date):
        with pytest.raises(DateOutOfRange):
            check_scorable(_window(MIDNIGHT, MIDNIGHT + 2 * DAY), date)

    @pytest.mark.parametrize("status", ["created", "registration", "finalized", "cancelled"])
    def test_closed_phases_refused(self, status):
        with pytest.raises(TournamentClosed):
            check_scorable(_window(MIDNIGHT, MIDNIGHT + 2 * DAY, status), "2023-11-15")


class TestSyncOnce:
    def test_first_sync_mirrors_tournament(self, sync, ledger, db):
        ledger.add_tournament(3, T0, T0 + DAY, T0 + 8 * DAY, players=["0xAAA", "0xBBB"])
        result = sync.sync_once(now=T0 + 2 * DAY)
        assert result.error is None
        assert result.phase == Phase.ACTIVE
        assert result.tournament["id"] == 3
        assert result.tournament["prize_pool"] == str(10**18)
        assert db.get_entries(3) == ["0xaaa", "0xbbb"]
        assert db.get_config(CURRENT_KEY) == "3"
        assert sync.current(now=T0 + 2 * DAY)["id"] == 3

    def test_no_tournament(self, sync):
        result = sync.sync_once(now=T0)
        assert result.tournament is None
        assert sync.current() is None

    def test_bad_timestamps_rejected(self, sync, ledger, db):
        ledger.add_tournament(4, T0 + DAY, T0, T0 + 8 * DAY)
        result = sync.sync_once(now=T0)
        assert result.error is not None
        assert db.get_tournament(4) is None

    def test_ledger_error_keeps_previous_state(self, sync, ledger, db):
        ledger.add_tournament(3, T0, T0 + DAY, T0 + 8 * DAY)
        sync.sync_once(now=T0 + DAY)
        ledger.fail_reads = True
        result = sync.sync_once(now=T0 + 2 * DAY)
        assert result.error
        assert result.tournament["id"] == 3
        assert db.get_tournament(3) is not None

    def test_pointer_unset_falls_back_to_local(self, sync, ledger, db):
        ledger.add_tournament(5, T0, T0 + DAY, T0 + 8 * DAY)
        sync.sync_once(now=T0 + DAY)
        ledger.active_id = 0
        result = sync.sync_once(now=T0 + 9 * DAY)
        assert result.fallback
        assert result.tournament["id"] == 5
        assert result.phase == Phase.ENDED

    def test_no_fallback_to_terminal_tournament(self, sync, ledger):
        ledger.add_tournament(5, T0, T0 + DAY, T0 + 8 * DAY, status=STATUS_FINALIZED)
        sync.sync_once(now=T0 + 9 * DAY)
        ledger.active_id = 0
        result = sync.sync_once(now=T0 + 9 * DAY)
        assert result.tournament is None
        assert not result.fallback

    def test_phase_transitions_over_time(self, sync, ledger):
        ledger.add_tournament(3, T0, T0 + DAY, T0 + 8 * DAY)
        assert sync.sync_once(now=T0).phase == Phase.REGISTRATION
        assert sync.sync_once(now=T0 + DAY).phase == Phase.ACTIVE
        assert sync.sync_once(now=T0 + 8 * DAY).phase == Phase.ENDED
        ledger.tournaments[3].status_code = STATUS_FINALIZED
        assert sync.sync_once(now=T0 + 9 * DAY).phase == Phase.FINALIZED


class TestRedeploy:
    def test_first_run_stores_fingerprint_without_wipe(self, sync, ledger, db):
        result = sync.sync_once(now=T0)
        assert not result.wiped
        assert db.get_config(FINGERPRINT_KEY)

    def test_changed_addresses_wipe_local_data(self, sync, ledger, db, engine):
        ledger.add_tournament(3, T0, T0 + DAY, T0 + 8 * DAY, players=["0xaaa"])
        sync.sync_once(now=T0 + DAY)
        engine.record_entity_score(3, 1, "2025-01-14", 100, 1)

        ledger.addresses["tournament_manager"] = "0x0000000000000000000000000000000000000001"
        ledger.tournaments = {}
        ledger.active_id = 0
        result = sync.sync_once(now=T0 + DAY)

        assert result.wiped
        assert db.get_tournament(3) is None
        assert db.get_daily_scores(3, "2025-01-14") == []
        assert db.get_entries(3) == []
        assert sync.current() is None
