"""Tests for the match orchestrator — commit-reveal protocol end to end.

Runs against the in-memory ledger with a manual clock. Async calls are
driven with asyncio.run.
"""

import asyncio
import json

import pytest

from duel.config import DuelConfig
from duel.crypto.commitment_builder import commitment_of
from duel.errors import (
    InconsistentError,
    RejectedError,
    RejectReason,
    TransientError,
    ValidationError,
)
from duel.ledger.memory import InMemoryLedger, InMemoryLedgerClient, ManualClock
from duel.models.match import MatchPhase, StakeRef
from duel.models.secret import CommitmentSecret, PortfolioSelection
from duel.persistence.event_log import EventKind, EventLog
from duel.persistence.local_state import (
    FileStateStore,
    InMemorySecretVault,
    InMemorySessionStore,
)
from duel.workflow.orchestrator import MatchOrchestrator, is_pending_key

ALICE = "0x00000000000000000000000000000000000000a1"
BOB = "0x00000000000000000000000000000000000000b2"
CAROL = "0x00000000000000000000000000000000000000c3"
NFT = "0x3B5a097c560636D5090266d5cBf5578B9940543F"

ALICE_PICKS = PortfolioSelection.from_indices(
    ["BTC", "ETH", "DOGE", "TRX", "SHIB", "PEPE", "HYPE"], 0, 1,
)
BOB_PICKS = PortfolioSelection.from_indices(
    ["SOL", "BNB", "AVAX", "XRP", "ADA", "DOGE", "SUI"], 0, 1,
)

CONFIG = DuelConfig(confirm_attempts=2, confirm_interval=0.0, poll_interval=1.0)


async def _no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


class _Player:
    """One participant: client, local state, and orchestrator."""

    def __init__(self, ledger: InMemoryLedger, address: str, client=None, sleep=_no_sleep):
        self.address = address
        self.vault = InMemorySecretVault()
        self.session = InMemorySessionStore()
        self.log = EventLog()
        self.client = client or ledger.client_for(address)
        self.orch = MatchOrchestrator(
            self.client, self.vault, self.session,
            config=CONFIG, event_log=self.log, sleep=sleep,
        )


def _setup(**kwargs) -> tuple[InMemoryLedger, ManualClock]:
    clock = ManualClock()
    ledger = InMemoryLedger(clock=clock, **kwargs)
    ledger.mint(NFT, 1, ALICE)
    ledger.mint(NFT, 2, BOB)
    return ledger, clock


def _committed_match(ledger: InMemoryLedger) -> tuple[_Player, _Player, int]:
    alice, bob = _Player(ledger, ALICE), _Player(ledger, BOB)
    match_id = asyncio.run(alice.orch.create_match(ALICE_PICKS, StakeRef(NFT, 1))).match_id
    asyncio.run(bob.orch.join_match(match_id, BOB_PICKS, StakeRef(NFT, 2)))
    return alice, bob, match_id


class _LostResponseClient(InMemoryLedgerClient):
    """create lands on the ledger, but the response never arrives."""

    async def create_match(self, stake, commitment):
        await super().create_match(stake, commitment)
        raise TransientError("connection reset after send")


class _DroppedRequestClient(InMemoryLedgerClient):
    """create never reaches the ledger."""

    async def create_match(self, stake, commitment):
        raise TransientError("connection refused")


class TestCreateAndJoin:
    def test_create_binds_session_and_secret(self) -> None:
        ledger, _ = _setup()
        alice = _Player(ledger, ALICE)
        snapshot = asyncio.run(alice.orch.create_match(ALICE_PICKS, StakeRef(NFT, 1)))

        assert snapshot.phase == MatchPhase.CREATED
        assert alice.session.get() == snapshot.match_id
        secret = alice.vault.load(snapshot.match_id)
        assert secret.selection == ALICE_PICKS
        assert commitment_of(secret) == snapshot.player1.commitment
        assert not any(is_pending_key(k) for k in alice.vault.keys())
        assert alice.log.events(kind=EventKind.MATCH_CREATED)

    def test_join_moves_both_to_committed(self) -> None:
        ledger, _ = _setup()
        alice, bob, match_id = _committed_match(ledger)
        snapshot = asyncio.run(alice.orch.refresh())
        assert snapshot.phase == MatchPhase.COMMITTED
        assert bob.session.get() == match_id
        assert commitment_of(bob.vault.load(match_id)) == snapshot.player2.commitment

    def test_invalid_selection_never_reaches_ledger(self) -> None:
        ledger, _ = _setup()
        alice = _Player(ledger, ALICE)
        bad = PortfolioSelection.from_indices(
            ["BTC", "ETH", "SOL", "ADA", "DOGE", "TRX", "PEPE"], 0, 1,
        )
        with pytest.raises(ValidationError):
            asyncio.run(alice.orch.create_match(bad, StakeRef(NFT, 1)))
        assert ledger.calls == []
        assert alice.vault.keys() == []

    def test_second_create_refused_locally(self) -> None:
        ledger, _ = _setup()
        alice = _Player(ledger, ALICE)
        asyncio.run(alice.orch.create_match(ALICE_PICKS, StakeRef(NFT, 1)))
        with pytest.raises(RejectedError) as info:
            asyncio.run(alice.orch.create_match(ALICE_PICKS, StakeRef(NFT, 1)))
        assert info.value.reason == RejectReason.ACTIVE_MATCH_EXISTS
        assert [c for c, _ in ledger.calls].count("createMatch") == 1

    def test_join_full_match_refused(self) -> None:
        ledger, _ = _setup()
        _, _, match_id = _committed_match(ledger)
        carol = _Player(ledger, CAROL)
        with pytest.raises(RejectedError) as info:
            asyncio.run(carol.orch.join_match(match_id, BOB_PICKS, StakeRef(NFT, 9)))
        assert info.value.reason == RejectReason.WRONG_PHASE
        assert ("joinMatch", CAROL) not in ledger.calls

    def test_rejected_create_drops_pending_secret(self) -> None:
        ledger, _ = _setup()
        alice = _Player(ledger, ALICE)
        with pytest.raises(RejectedError) as info:
            asyncio.run(alice.orch.create_match(ALICE_PICKS, StakeRef(NFT, 2)))
        assert info.value.reason == RejectReason.STAKE_UNAVAILABLE
        assert alice.vault.keys() == []
        assert alice.session.get() is None
        failed = alice.log.events(kind=EventKind.SUBMISSION_FAILED)
        assert failed[0].payload["category"] == "rejected"


class TestTransientFailures:
    def test_lost_response_keeps_secret_and_resume_adopts_it(self) -> None:
        ledger, _ = _setup()
        alice = _Player(ledger, ALICE, client=_LostResponseClient(ledger, ALICE))

        with pytest.raises(TransientError):
            asyncio.run(alice.orch.create_match(ALICE_PICKS, StakeRef(NFT, 1)))
        assert alice.session.get() is None
        pending = alice.vault.keys()
        assert len(pending) == 1 and is_pending_key(pending[0])

        snapshot = asyncio.run(alice.orch.resume())
        assert snapshot.match_id == 1
        assert alice.session.get() == 1
        assert alice.vault.keys() == ["1"]
        assert alice.log.events(kind=EventKind.SECRET_ADOPTED)

    def test_dropped_request_leaves_no_session(self) -> None:
        ledger, _ = _setup()
        alice = _Player(ledger, ALICE, client=_DroppedRequestClient(ledger, ALICE))

        with pytest.raises(TransientError):
            asyncio.run(alice.orch.create_match(ALICE_PICKS, StakeRef(NFT, 1)))
        assert asyncio.run(alice.orch.resume()) is None
        assert alice.session.get() is None
        assert len(alice.vault.keys()) == 1

    def test_transient_read_propagates(self) -> None:
        ledger, _ = _setup()
        alice = _Player(ledger, ALICE)
        ledger.fail_next()
        with pytest.raises(TransientError):
            asyncio.run(alice.orch.create_match(ALICE_PICKS, StakeRef(NFT, 1)))
        assert ledger.calls == []
        assert alice.vault.keys() == []


class TestStart:
    def test_start_refused_while_created(self) -> None:
        ledger, _ = _setup()
        alice = _Player(ledger, ALICE)
        asyncio.run(alice.orch.create_match(ALICE_PICKS, StakeRef(NFT, 1)))
        with pytest.raises(RejectedError) as info:
            asyncio.run(alice.orch.start_match())
        assert info.value.reason == RejectReason.WRONG_PHASE
        assert ("startMatch", ALICE) not in ledger.calls

    def test_start_after_both_committed(self) -> None:
        ledger, clock = _setup()
        _, bob, _ = _committed_match(ledger)
        snapshot = asyncio.run(bob.orch.start_match())
        assert snapshot.phase == MatchPhase.STARTED
        assert snapshot.started_at == clock()

    def test_start_twice_submits_once(self) -> None:
        ledger, _ = _setup()
        alice, bob, _ = _committed_match(ledger)
        asyncio.run(bob.orch.start_match())
        asyncio.run(alice.orch.start_match())
        assert [c for c, _ in ledger.calls].count("startMatch") == 1

    def test_non_participant_refused(self) -> None:
        ledger, _ = _setup()
        _, _, match_id = _committed_match(ledger)
        with pytest.raises(RejectedError) as info:
            asyncio.run(_Player(ledger, CAROL).orch.start_match(match_id))
        assert info.value.reason == RejectReason.NOT_PARTICIPANT


class TestReveal:
    def _started(self, **kwargs):
        ledger, clock = _setup(**kwargs)
        alice, bob, match_id = _committed_match(ledger)
        asyncio.run(alice.orch.start_match())
        return ledger, clock, alice, bob, match_id

    def test_reveal_refused_before_window_ends(self) -> None:
        ledger, clock, alice, _, _ = self._started()
        clock.advance(60)
        with pytest.raises(RejectedError) as info:
            asyncio.run(alice.orch.reveal())
        assert info.value.reason == RejectReason.WRONG_PHASE
        assert ("revealAndSettle", ALICE) not in ledger.calls

    def test_reveal_and_settle(self) -> None:
        ledger, clock, alice, bob, match_id = self._started(price_moves={"BTC": 40})
        clock.advance(120)

        first = asyncio.run(alice.orch.reveal())
        assert first.phase == MatchPhase.ENDED
        assert first.player1.revealed
        assert alice.vault.load(match_id) is None
        assert alice.session.get() == match_id

        settled = asyncio.run(bob.orch.reveal())
        assert settled.phase == MatchPhase.SETTLED
        assert settled.outcome_for(BOB) == "lost"
        assert bob.session.get() is None
        assert bob.vault.keys() == []

        again = asyncio.run(alice.orch.reveal())
        assert again.outcome_for(ALICE) == "won"
        assert alice.session.get() is None
        assert [c for c, a in ledger.calls if a == ALICE].count("revealAndSettle") == 1
        assert alice.log.events(kind=EventKind.MATCH_SETTLED)[0].payload["outcome"] == "won"

    def test_missing_secret_is_inconsistent(self) -> None:
        ledger, clock, alice, _, match_id = self._started()
        alice.vault.clear(match_id)
        clock.advance(120)
        with pytest.raises(InconsistentError):
            asyncio.run(alice.orch.reveal())
        assert ("revealAndSettle", ALICE) not in ledger.calls
        assert alice.log.events(kind=EventKind.INCONSISTENCY_DETECTED)

    def test_wrong_secret_is_inconsistent(self) -> None:
        ledger, clock, alice, _, match_id = self._started()
        alice.vault.store(match_id, CommitmentSecret(ALICE_PICKS, "duel-0-forged"))
        clock.advance(120)
        with pytest.raises(InconsistentError):
            asyncio.run(alice.orch.reveal())
        assert ("revealAndSettle", ALICE) not in ledger.calls


class TestCancel:
    def test_cancel_unjoined_match(self) -> None:
        ledger, _ = _setup()
        alice = _Player(ledger, ALICE)
        match_id = asyncio.run(alice.orch.create_match(ALICE_PICKS, StakeRef(NFT, 1))).match_id
        snapshot = asyncio.run(alice.orch.cancel_match())
        assert snapshot.phase == MatchPhase.CANCELLED
        assert alice.session.get() is None
        assert alice.vault.load(match_id) is None
        assert ledger.get_active_match(ALICE) is None

    def test_cancel_after_join_refused(self) -> None:
        ledger, _ = _setup()
        alice, _, _ = _committed_match(ledger)
        with pytest.raises(RejectedError) as info:
            asyncio.run(alice.orch.cancel_match())
        assert info.value.reason == RejectReason.WRONG_PHASE
        assert ("cancelMatch", ALICE) not in ledger.calls


class TestResume:
    def test_resume_without_match(self) -> None:
        ledger, _ = _setup()
        assert asyncio.run(_Player(ledger, ALICE).orch.resume()) is None

    def test_resume_restores_session_from_ledger(self) -> None:
        ledger, _ = _setup()
        alice, _, match_id = _committed_match(ledger)
        alice.session.clear()
        snapshot = asyncio.run(alice.orch.resume())
        assert snapshot.match_id == match_id
        assert alice.session.get() == match_id

    def test_resume_detects_lost_secret(self) -> None:
        ledger, _ = _setup()
        alice, _, match_id = _committed_match(ledger)
        alice.vault.clear(match_id)
        with pytest.raises(InconsistentError) as info:
            asyncio.run(alice.orch.resume())
        assert info.value.match_id == match_id

    def test_resume_drops_stale_session(self) -> None:
        ledger, _ = _setup()
        alice = _Player(ledger, ALICE)
        match_id = asyncio.run(alice.orch.create_match(ALICE_PICKS, StakeRef(NFT, 1))).match_id
        ledger.cancel_match(ALICE, match_id)
        assert asyncio.run(alice.orch.resume()) is None
        assert alice.session.get() is None
        assert alice.vault.load(match_id) is None

    def test_file_store_survives_restart(self, tmp_path) -> None:
        ledger, clock = _setup()
        store = FileStateStore(tmp_path / "state.json")
        first = MatchOrchestrator(ledger.client_for(ALICE), store, store, config=CONFIG)
        match_id = asyncio.run(first.create_match(ALICE_PICKS, StakeRef(NFT, 1))).match_id
        bob = _Player(ledger, BOB)
        asyncio.run(bob.orch.join_match(match_id, BOB_PICKS, StakeRef(NFT, 2)))
        asyncio.run(bob.orch.start_match())
        clock.advance(120)

        reopened = FileStateStore(tmp_path / "state.json")
        second = MatchOrchestrator(ledger.client_for(ALICE), reopened, reopened, config=CONFIG)
        assert asyncio.run(second.resume()).phase == MatchPhase.ENDED
        assert asyncio.run(second.reveal()).player1.revealed


class TestWatch:
    def test_watch_runs_match_to_settlement(self) -> None:
        ledger, clock = _setup(price_moves={"SOL": 10})

        async def advancing_sleep(seconds: float) -> None:
            clock.advance(max(1, int(seconds)))
            await asyncio.sleep(0)

        alice = _Player(ledger, ALICE, sleep=advancing_sleep)
        bob = _Player(ledger, BOB, sleep=advancing_sleep)
        ticks: list[tuple[str, int]] = []

        async def run():
            created = await alice.orch.create_match(ALICE_PICKS, StakeRef(NFT, 1))
            await bob.orch.join_match(created.match_id, BOB_PICKS, StakeRef(NFT, 2))
            return await asyncio.gather(
                alice.orch.watch(max_polls=500, on_tick=lambda k, v: ticks.append((k, v))),
                bob.orch.watch(auto_start=True, max_polls=500),
            )

        alice_view, bob_view = asyncio.run(run())
        assert alice_view.phase == MatchPhase.SETTLED
        assert bob_view.phase == MatchPhase.SETTLED
        assert bob_view.outcome_for(BOB) == "won"
        assert any(kind == "countdown" for kind, _ in ticks)
        assert alice.session.get() is None
        assert bob.session.get() is None

    def test_watch_counts_while_waiting(self) -> None:
        ledger, clock = _setup()

        async def advancing_sleep(seconds: float) -> None:
            clock.advance(max(1, int(seconds)))
            await asyncio.sleep(0)

        alice = _Player(ledger, ALICE, sleep=advancing_sleep)
        ticks: list[tuple[str, int]] = []

        async def run():
            await alice.orch.create_match(ALICE_PICKS, StakeRef(NFT, 1))
            return await alice.orch.watch(
                max_polls=10, on_tick=lambda k, v: ticks.append((k, v)),
            )

        snapshot = asyncio.run(run())
        assert snapshot.phase == MatchPhase.CREATED
        assert ticks and all(kind == "waiting" for kind, _ in ticks)

    def test_timers_tick_once_per_second_regardless_of_poll_interval(self) -> None:
        ledger, _ = _setup()
        sleeps: list[float] = []

        async def recording_sleep(seconds: float) -> None:
            sleeps.append(seconds)
            await asyncio.sleep(0)

        alice = _Player(ledger, ALICE, sleep=recording_sleep)
        alice.orch = MatchOrchestrator(
            alice.client, alice.vault, alice.session,
            config=CONFIG.with_overrides(poll_interval=5.0), sleep=recording_sleep,
        )

        async def run():
            await alice.orch.create_match(ALICE_PICKS, StakeRef(NFT, 1))
            return await alice.orch.watch(max_polls=3)

        asyncio.run(run())
        assert 5.0 in sleeps
        assert 1.0 in sleeps

    def test_reveal_failure_after_window_surfaces_from_watch(self) -> None:
        ledger, clock = _setup()

        async def advancing_sleep(seconds: float) -> None:
            clock.advance(max(1, int(seconds)))
            await asyncio.sleep(0)

        alice, _, match_id = _committed_match(ledger)
        asyncio.run(alice.orch.start_match())
        alice.vault.clear(match_id)
        alice.orch = MatchOrchestrator(
            alice.client, alice.vault, alice.session, config=CONFIG,
            event_log=alice.log, sleep=advancing_sleep,
        )

        with pytest.raises(InconsistentError):
            asyncio.run(alice.orch.watch(max_polls=500))
        assert ("revealAndSettle", ALICE) not in ledger.calls
        assert alice.log.events(kind=EventKind.INCONSISTENCY_DETECTED)


class TestFileBackedBind:
    def test_bind_is_a_single_write(self, tmp_path, monkeypatch) -> None:
        ledger, _ = _setup()
        store = FileStateStore(tmp_path / "state.json")
        writes: list[dict] = []
        flush = store._flush

        def counting_flush(doc):
            writes.append(json.loads(json.dumps(doc)))
            flush(doc)

        monkeypatch.setattr(store, "_flush", counting_flush)
        orch = MatchOrchestrator(ledger.client_for(ALICE), store, store, config=CONFIG)
        snapshot = asyncio.run(orch.create_match(ALICE_PICKS, StakeRef(NFT, 1)))

        # pending secret, then re-key + session in one document
        assert len(writes) == 2
        assert writes[1]["active_match_id"] == snapshot.match_id
        assert list(writes[1]["secrets"]) == [str(snapshot.match_id)]
        assert FileStateStore(tmp_path / "state.json").get() == snapshot.match_id
