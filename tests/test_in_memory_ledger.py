"""Tests for the in-memory reference ledger — rule enforcement."""

import pytest

from duel.crypto.commitment_builder import build_commitment
from duel.errors import RejectedError, RejectReason, TransientError
from duel.ledger.memory import InMemoryLedger, ManualClock
from duel.models.match import MatchPhase, StakeRef
from duel.models.secret import PortfolioSelection

ALICE = "0x00000000000000000000000000000000000000a1"
BOB = "0x00000000000000000000000000000000000000b2"
CAROL = "0x00000000000000000000000000000000000000c3"
NFT = "0x3B5a097c560636D5090266d5cBf5578B9940543F"

ALICE_PICKS = ["BTC", "ETH", "DOGE", "TRX", "SHIB", "PEPE", "HYPE"]
BOB_PICKS = ["SOL", "BNB", "AVAX", "XRP", "ADA", "DOGE", "SUI"]


def _selection(assets) -> PortfolioSelection:
    return PortfolioSelection.from_indices(assets, 0, 1)


def _ledger(**kwargs) -> tuple[InMemoryLedger, ManualClock]:
    clock = ManualClock()
    ledger = InMemoryLedger(clock=clock, **kwargs)
    ledger.mint(NFT, 1, ALICE)
    ledger.mint(NFT, 2, BOB)
    return ledger, clock


def _committed(ledger: InMemoryLedger) -> int:
    match_id = ledger.create_match(
        ALICE, StakeRef(NFT, 1), build_commitment(_selection(ALICE_PICKS), "a"),
    )
    ledger.join_match(BOB, match_id, StakeRef(NFT, 2), build_commitment(_selection(BOB_PICKS), "b"))
    return match_id


class TestCreateAndJoin:
    def test_ids_start_at_one(self) -> None:
        ledger, _ = _ledger()
        assert ledger.create_match(ALICE, StakeRef(NFT, 1), "0x01") == 1
        assert ledger.get_match(1).phase == MatchPhase.CREATED
        assert ledger.get_active_match(ALICE) == 1

    def test_one_active_match_per_address(self) -> None:
        ledger, _ = _ledger()
        ledger.mint(NFT, 3, ALICE)
        ledger.create_match(ALICE, StakeRef(NFT, 1), "0x01")
        with pytest.raises(RejectedError) as info:
            ledger.create_match(ALICE, StakeRef(NFT, 3), "0x02")
        assert info.value.reason == RejectReason.ACTIVE_MATCH_EXISTS

    def test_stake_must_be_owned(self) -> None:
        ledger, _ = _ledger()
        with pytest.raises(RejectedError) as info:
            ledger.create_match(ALICE, StakeRef(NFT, 2), "0x01")
        assert info.value.reason == RejectReason.STAKE_UNAVAILABLE

    def test_join_moves_to_committed(self) -> None:
        ledger, _ = _ledger()
        match_id = _committed(ledger)
        snapshot = ledger.get_match(match_id)
        assert snapshot.phase == MatchPhase.COMMITTED
        assert snapshot.both_committed
        assert ledger.get_active_match(BOB) == match_id

    def test_third_player_cannot_join(self) -> None:
        ledger, _ = _ledger()
        match_id = _committed(ledger)
        with pytest.raises(RejectedError) as info:
            ledger.join_match(CAROL, match_id, StakeRef(NFT, 9), "0x03")
        assert info.value.reason == RejectReason.WRONG_PHASE

    def test_cannot_join_own_match(self) -> None:
        ledger, _ = _ledger()
        match_id = ledger.create_match(ALICE, StakeRef(NFT, 1), "0x01")
        with pytest.raises(RejectedError) as info:
            ledger.join_match(ALICE, match_id, StakeRef(NFT, 1), "0x01")
        assert info.value.reason == RejectReason.SLOT_FILLED

    def test_unknown_match(self) -> None:
        ledger, _ = _ledger()
        with pytest.raises(RejectedError) as info:
            ledger.get_match(99)
        assert info.value.reason == RejectReason.UNKNOWN_MATCH


class TestWindow:
    def test_start_requires_committed(self) -> None:
        ledger, _ = _ledger()
        match_id = ledger.create_match(ALICE, StakeRef(NFT, 1), "0x01")
        with pytest.raises(RejectedError) as info:
            ledger.start_match(ALICE, match_id)
        assert info.value.reason == RejectReason.WRONG_PHASE

    def test_window_ends_lazily(self) -> None:
        ledger, clock = _ledger()
        match_id = _committed(ledger)
        ledger.start_match(BOB, match_id)
        clock.advance(119)
        assert ledger.get_match(match_id).phase == MatchPhase.STARTED
        clock.advance(1)
        assert ledger.get_match(match_id).phase == MatchPhase.ENDED

    def test_window_end_does_not_touch_updated_at(self) -> None:
        ledger, clock = _ledger()
        match_id = _committed(ledger)
        ledger.start_match(BOB, match_id)
        started = ledger.get_match(match_id).updated_at
        clock.advance(300)
        assert ledger.get_match(match_id).updated_at == started


class TestReveal:
    def _ended(self, **kwargs):
        ledger, clock = _ledger(**kwargs)
        match_id = _committed(ledger)
        ledger.start_match(ALICE, match_id)
        clock.advance(120)
        return ledger, clock, match_id

    def test_reveal_before_end_rejected(self) -> None:
        ledger, _ = _ledger()
        match_id = _committed(ledger)
        ledger.start_match(ALICE, match_id)
        with pytest.raises(RejectedError) as info:
            ledger.reveal_and_settle(ALICE, match_id, ALICE_PICKS, [2, 1, 0, 0, 0, 0, 0], "a")
        assert info.value.reason == RejectReason.WRONG_PHASE

    def test_mismatched_reveal_rejected(self) -> None:
        ledger, _, match_id = self._ended()
        with pytest.raises(RejectedError) as info:
            ledger.reveal_and_settle(ALICE, match_id, ALICE_PICKS, [2, 1, 0, 0, 0, 0, 0], "zzz")
        assert info.value.reason == RejectReason.COMMITMENT_MISMATCH

    def test_double_reveal_rejected(self) -> None:
        ledger, _, match_id = self._ended()
        ledger.reveal_and_settle(ALICE, match_id, ALICE_PICKS, [2, 1, 0, 0, 0, 0, 0], "a")
        with pytest.raises(RejectedError) as info:
            ledger.reveal_and_settle(ALICE, match_id, ALICE_PICKS, [2, 1, 0, 0, 0, 0, 0], "a")
        assert info.value.reason == RejectReason.ALREADY_REVEALED

    def test_both_reveals_settle_with_winner(self) -> None:
        ledger, _, match_id = self._ended(price_moves={"BTC": 100, "SOL": -50})
        ledger.reveal_and_settle(ALICE, match_id, ALICE_PICKS, [2, 1, 0, 0, 0, 0, 0], "a")
        assert ledger.get_match(match_id).phase == MatchPhase.ENDED
        ledger.reveal_and_settle(BOB, match_id, BOB_PICKS, [2, 1, 0, 0, 0, 0, 0], "b")

        snapshot = ledger.get_match(match_id)
        assert snapshot.phase == MatchPhase.SETTLED
        assert snapshot.player1.score == 200
        assert snapshot.player2.score == -100
        assert snapshot.winner == ALICE
        assert snapshot.outcome_for(ALICE) == "won"
        assert snapshot.outcome_for(BOB) == "lost"
        assert ledger.get_active_match(ALICE) is None
        assert ledger.get_active_match(BOB) is None

    def test_equal_scores_tie(self) -> None:
        ledger, _, match_id = self._ended()
        ledger.reveal_and_settle(ALICE, match_id, ALICE_PICKS, [2, 1, 0, 0, 0, 0, 0], "a")
        ledger.reveal_and_settle(BOB, match_id, BOB_PICKS, [2, 1, 0, 0, 0, 0, 0], "b")
        snapshot = ledger.get_match(match_id)
        assert snapshot.winner is None
        assert snapshot.outcome_for(ALICE) == "tie"


class TestCancelAndExpire:
    def test_creator_cancels_and_stake_returns(self) -> None:
        ledger, _ = _ledger()
        match_id = ledger.create_match(ALICE, StakeRef(NFT, 1), "0x01")
        ledger.cancel_match(ALICE, match_id)
        assert ledger.get_match(match_id).phase == MatchPhase.CANCELLED
        assert ledger.create_match(ALICE, StakeRef(NFT, 1), "0x02") == 2

    def test_cancel_after_join_rejected(self) -> None:
        ledger, _ = _ledger()
        match_id = _committed(ledger)
        with pytest.raises(RejectedError) as info:
            ledger.cancel_match(ALICE, match_id)
        assert info.value.reason == RejectReason.WRONG_PHASE

    def test_expire_requires_staleness(self) -> None:
        ledger, clock = _ledger()
        match_id = _committed(ledger)
        clock.advance(119)
        with pytest.raises(RejectedError) as info:
            ledger.force_expire_match(CAROL, match_id)
        assert info.value.reason == RejectReason.NOT_EXPIRED
        clock.advance(1)
        ledger.force_expire_match(CAROL, match_id)
        assert ledger.get_match(match_id).phase == MatchPhase.EXPIRED
        assert ledger.get_active_match(ALICE) is None
        assert ledger.get_active_match(BOB) is None

    def test_expire_terminal_rejected(self) -> None:
        ledger, clock = _ledger()
        match_id = _committed(ledger)
        clock.advance(200)
        ledger.clear_stuck_match(ALICE)
        with pytest.raises(RejectedError) as info:
            ledger.force_expire_match(CAROL, match_id)
        assert info.value.reason == RejectReason.ALREADY_TERMINAL

    def test_clear_without_active_match(self) -> None:
        ledger, _ = _ledger()
        with pytest.raises(RejectedError) as info:
            ledger.clear_stuck_match(ALICE)
        assert info.value.reason == RejectReason.NO_ACTIVE_MATCH


class TestFaultInjection:
    def test_fail_next_raises_once(self) -> None:
        ledger, _ = _ledger()
        ledger.fail_next()
        with pytest.raises(TransientError):
            ledger.get_active_match(ALICE)
        assert ledger.get_active_match(ALICE) is None

    def test_owned_tokens(self) -> None:
        ledger, _ = _ledger()
        ledger.mint(NFT, 5, ALICE)
        assert ledger.owned_tokens(ALICE, 20) == [1, 5]
        assert ledger.owned_tokens(ALICE, 3) == [1]
