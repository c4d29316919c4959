"""Session state machine tests: lifecycle, voting, night actions, locking and rollback."""

import asyncio
import re
from collections import Counter

import pytest

from api.hub import BroadcastHub
from api.sessions import SessionService
from api.storage import MemoryStorage
from game.errors import NotFoundError, RuleViolation, StorageError
from game.rules import NightAction, Phase, PlayerStatus, Role, Winner
from narrator import OPENING_NARRATIVE

NAMES = ("Alice", "Bob", "Carol", "Dave")


async def _lobby(service, names=NAMES, ready=True, **session_kwargs):
    session = await service.create_session("Friday Night", **session_kwargs)
    players = [await service.join_session(session.id, name) for name in names]
    if ready:
        for p in players:
            await service.update_participant(p.id, is_ready=True)
    return session, players


async def _roles(service, session_id) -> dict[Role, list]:
    by_role: dict[Role, list] = {}
    for p in await service.storage.list_participants(session_id):
        by_role.setdefault(p.role, []).append(p)
    return by_role


async def _started(service, **session_kwargs):
    session, players = await _lobby(service, **session_kwargs)
    await service.start_session(session.id)
    return session, await _roles(service, session.id)


# ── Lobby ─────────────────────────────────────────────────────────────────────


def test_join_code_format_and_lookup(service):
    async def run():
        session = await service.create_session("Lobby")
        assert re.fullmatch(r"[A-Z0-9]{6}", session.code)
        found = await service.get_session_by_code(session.code.lower())
        assert found.id == session.id
        with pytest.raises(NotFoundError):
            await service.get_session_by_code("ZZZZZZZ")

    asyncio.run(run())


def test_first_joiner_is_host(service):
    async def run():
        session, players = await _lobby(service, ready=False)
        assert players[0].is_host
        assert not any(p.is_host for p in players[1:])
        state = await service.get_state(session.id)
        assert state.session.host_id == players[0].id

    asyncio.run(run())


def test_join_rejects_duplicate_name(service):
    async def run():
        session, _ = await _lobby(service, ready=False)
        with pytest.raises(RuleViolation, match="taken"):
            await service.join_session(session.id, "alice")

    asyncio.run(run())


def test_join_rejects_full_session(service):
    async def run():
        session, _ = await _lobby(service, ready=False, capacity=4)
        with pytest.raises(RuleViolation, match="full"):
            await service.join_session(session.id, "Erin")

    asyncio.run(run())


def test_join_unknown_session(service):
    with pytest.raises(NotFoundError):
        asyncio.run(service.join_session("missing", "Alice"))


def test_unknown_session_leaves_no_lock(service):
    async def run():
        with pytest.raises(NotFoundError):
            await service.get_state("missing")
        with pytest.raises(NotFoundError):
            await service.cast_vote("missing", "p1", "p2")
        await service.handle_disconnect("gone", "p1")
        assert "missing" not in service._locks
        assert "gone" not in service._locks

    asyncio.run(run())


def test_verify_participant_token(service):
    async def run():
        _, players = await _lobby(service, ready=False)
        alice, bob = players[0], players[1]
        assert alice.token and alice.token != bob.token
        assert (await service.verify_participant(alice.id, alice.token)).id == alice.id
        for token in (None, "", bob.token):
            with pytest.raises(RuleViolation, match="Invalid participant token"):
                await service.verify_participant(alice.id, token)

    asyncio.run(run())


def test_create_rejects_distribution_over_capacity(service):
    with pytest.raises(RuleViolation):
        asyncio.run(service.create_session("Big", capacity=4, role_distribution={Role.MAFIA: 3, Role.VILLAGER: 2}))


def test_create_rejects_distribution_without_mafia(service):
    with pytest.raises(RuleViolation, match="mafia"):
        asyncio.run(service.create_session("Safe", role_distribution={Role.VILLAGER: 4}))


def test_update_session_capacity_below_roster(service):
    async def run():
        session, _ = await _lobby(service, ready=False)
        with pytest.raises(RuleViolation, match="Capacity"):
            await service.update_session(session.id, capacity=3)
        updated = await service.update_session(session.id, name="Renamed", capacity=10)
        assert (updated.name, updated.capacity) == ("Renamed", 10)

    asyncio.run(run())


def test_update_participant_rename_and_ready(service):
    async def run():
        session, players = await _lobby(service, ready=False)
        updated = await service.update_participant(players[1].id, name="Robert", is_ready=True)
        assert (updated.name, updated.is_ready) == ("Robert", True)
        with pytest.raises(RuleViolation, match="taken"):
            await service.update_participant(players[2].id, name="ROBERT")

    asyncio.run(run())


def test_transfer_host(service):
    async def run():
        session, players = await _lobby(service, ready=False)
        with pytest.raises(RuleViolation, match="host"):
            await service.transfer_host(session.id, players[1].id, players[2].id)
        updated = await service.transfer_host(session.id, players[0].id, players[2].id)
        assert updated.host_id == players[2].id
        hosts = [p.id for p in await service.storage.list_participants(session.id) if p.is_host]
        assert hosts == [players[2].id]

    asyncio.run(run())


def test_lobby_disconnect_removes_and_transfers_host(service):
    async def run():
        session, players = await _lobby(service, ready=False)
        await service.handle_disconnect(session.id, players[0].id)
        remaining = await service.storage.list_participants(session.id)
        assert [p.id for p in remaining] == [p.id for p in players[1:]]
        assert remaining[0].is_host
        state = await service.get_state(session.id)
        assert state.session.host_id == players[1].id

    asyncio.run(run())


def test_disconnect_after_start_keeps_participant(service):
    async def run():
        session, _ = await _started(service)
        before = await service.storage.list_participants(session.id)
        await service.handle_disconnect(session.id, before[0].id)
        assert len(await service.storage.list_participants(session.id)) == 4

    asyncio.run(run())


# ── Start ─────────────────────────────────────────────────────────────────────


def test_start_needs_four_players(service):
    async def run():
        session, _ = await _lobby(service, names=NAMES[:3])
        with pytest.raises(RuleViolation, match="Not enough players"):
            await service.start_session(session.id)
        state = await service.get_state(session.id)
        assert state.session.phase == Phase.LOBBY

    asyncio.run(run())


def test_start_needs_everyone_ready(service):
    async def run():
        session, players = await _lobby(service, ready=False)
        await service.update_participant(players[0].id, is_ready=True)
        with pytest.raises(RuleViolation, match="ready"):
            await service.start_session(session.id)

    asyncio.run(run())


def test_start_rejects_non_host(service):
    async def run():
        session, players = await _lobby(service)
        with pytest.raises(RuleViolation, match="host"):
            await service.start_session(session.id, requested_by=players[1].id)

    asyncio.run(run())


def test_start_with_default_distribution(service, fake_narrator):
    async def run():
        session, players = await _lobby(service)
        started = await service.start_session(session.id, requested_by=players[0].id)
        assert started.phase == Phase.DAY
        assert started.day_number == 1
        assert started.time_remaining == 300
        assert started.game_log == ("Game started with 4 players",)
        assert started.narrative == OPENING_NARRATIVE
        roles = Counter(p.role for p in await service.storage.list_participants(session.id))
        assert roles == Counter({Role.VILLAGER: 1, Role.DOCTOR: 1, Role.DETECTIVE: 1, Role.MAFIA: 1})
        # No credential configured, so the narrator is never asked
        assert fake_narrator.contexts == []

    asyncio.run(run())


def test_start_twice_rejected(service):
    async def run():
        session, _ = await _started(service)
        with pytest.raises(RuleViolation, match="already started"):
            await service.start_session(session.id)

    asyncio.run(run())


def test_start_fills_leftovers_with_villagers(service):
    async def run():
        session, _ = await _lobby(
            service,
            names=NAMES + ("Erin",),
            role_distribution={Role.MAFIA: 1, Role.DETECTIVE: 1},
        )
        await service.start_session(session.id)
        roles = Counter(p.role for p in await service.storage.list_participants(session.id))
        assert roles == Counter({Role.VILLAGER: 3, Role.MAFIA: 1, Role.DETECTIVE: 1})

    asyncio.run(run())


def test_role_reveal_reaches_only_its_owner(service, make_connection):
    async def run():
        session, players = await _lobby(service)
        conns = {}
        for p in players:
            conns[p.id] = make_connection()
            await service.hub.register(session.id, conns[p.id], p.id)
        await service.start_session(session.id)
        stored = {p.id: p for p in await service.storage.list_participants(session.id)}
        for pid, conn in conns.items():
            reveals = [m for m in conn.sent if m["type"] == "role-reveal"]
            assert len(reveals) == 1
            assert reveals[0]["payload"] == {"subject_id": pid, "role": stored[pid].role.value}
            assert "phase-change" in conn.types()
            # Public snapshots never carry alive players' roles
            change = next(m for m in conn.sent if m["type"] == "phase-change")
            assert all(p["role"] is None for p in change["payload"]["participants"])

    asyncio.run(run())


# ── Day and voting ────────────────────────────────────────────────────────────


def test_day_to_voting(service):
    async def run():
        session, _ = await _started(service)
        voting = await service.advance_phase(session.id)
        assert voting.phase == Phase.VOTING
        assert voting.game_log[-1] == "Day 1 voting phase begins"

    asyncio.run(run())


def test_vote_only_during_voting(service):
    async def run():
        session, roles = await _started(service)
        villager, mafia = roles[Role.VILLAGER][0], roles[Role.MAFIA][0]
        with pytest.raises(RuleViolation, match="wrong phase"):
            await service.cast_vote(session.id, villager.id, mafia.id)

    asyncio.run(run())


def test_vote_rejects_self_and_unknown(service):
    async def run():
        session, roles = await _started(service)
        await service.advance_phase(session.id)
        villager = roles[Role.VILLAGER][0]
        with pytest.raises(RuleViolation, match="Invalid vote target"):
            await service.cast_vote(session.id, villager.id, villager.id)
        with pytest.raises(RuleViolation, match="Invalid vote target"):
            await service.cast_vote(session.id, villager.id, "nobody")
        with pytest.raises(NotFoundError):
            await service.cast_vote(session.id, "nobody", villager.id)

    asyncio.run(run())


def test_revote_moves_counter(service):
    async def run():
        session, roles = await _started(service)
        await service.advance_phase(session.id)
        villager = roles[Role.VILLAGER][0]
        doctor, mafia = roles[Role.DOCTOR][0], roles[Role.MAFIA][0]
        await service.cast_vote(session.id, villager.id, doctor.id)
        await service.cast_vote(session.id, villager.id, mafia.id)
        stored = {p.id: p for p in await service.storage.list_participants(session.id)}
        assert stored[doctor.id].votes == 0
        assert stored[mafia.id].votes == 1
        assert stored[villager.id].voted_for == mafia.id
        await service.cast_vote(session.id, villager.id, None)
        stored = {p.id: p for p in await service.storage.list_participants(session.id)}
        assert stored[mafia.id].votes == 0
        assert stored[villager.id].voted_for is None

    asyncio.run(run())


def test_vote_out_last_mafia_ends_game(service, make_connection):
    async def run():
        session, roles = await _started(service)
        await service.advance_phase(session.id)
        mafia = roles[Role.MAFIA][0]
        for role in (Role.VILLAGER, Role.DOCTOR, Role.DETECTIVE):
            await service.cast_vote(session.id, roles[role][0].id, mafia.id)
        watcher = make_connection()
        await service.hub.register(session.id, watcher)
        ended = await service.advance_phase(session.id)
        assert ended.phase == Phase.ENDED
        assert ended.winner == Winner.VILLAGERS
        assert not ended.is_active
        assert ended.time_remaining == 0
        assert f"{mafia.name} was eliminated by vote" in ended.game_log
        assert ended.game_log[-1] == "Game ended - VILLAGERS wins!"
        change = next(m for m in watcher.sent if m["type"] == "phase-change")
        # Roles are public once the game is over
        assert all(p["role"] is not None for p in change["payload"]["participants"])

    asyncio.run(run())


def test_tied_vote_goes_to_night(service):
    async def run():
        session, roles = await _started(service)
        await service.advance_phase(session.id)
        villager, doctor = roles[Role.VILLAGER][0], roles[Role.DOCTOR][0]
        await service.cast_vote(session.id, villager.id, doctor.id)
        await service.cast_vote(session.id, doctor.id, villager.id)
        night = await service.advance_phase(session.id)
        assert night.phase == Phase.NIGHT
        assert night.game_log[-1] == "No one was eliminated (tie vote)"
        stored = await service.storage.list_participants(session.id)
        assert all(p.alive and p.votes == 0 and p.voted_for is None for p in stored)

    asyncio.run(run())


# ── Night ─────────────────────────────────────────────────────────────────────


async def _to_night(service, session_id):
    await service.advance_phase(session_id)
    await service.advance_phase(session_id)


def test_action_rules(service):
    async def run():
        session, roles = await _started(service)
        mafia, villager, doctor = roles[Role.MAFIA][0], roles[Role.VILLAGER][0], roles[Role.DOCTOR][0]
        with pytest.raises(RuleViolation, match="wrong phase"):
            await service.take_action(session.id, mafia.id, NightAction.KILL, villager.id)
        await _to_night(service, session.id)
        with pytest.raises(RuleViolation, match="cannot perform"):
            await service.take_action(session.id, villager.id, NightAction.KILL, mafia.id)
        with pytest.raises(RuleViolation, match="cannot perform"):
            await service.take_action(session.id, doctor.id, NightAction.KILL, mafia.id)
        with pytest.raises(RuleViolation, match="Invalid action target"):
            await service.take_action(session.id, mafia.id, NightAction.KILL, mafia.id)
        recorded = await service.take_action(session.id, mafia.id, NightAction.KILL, villager.id)
        assert (recorded.last_action, recorded.action_target) == (NightAction.KILL, villager.id)

    asyncio.run(run())


def test_night_kill_then_new_day(service):
    async def run():
        session, roles = await _started(service)
        await _to_night(service, session.id)
        mafia, villager = roles[Role.MAFIA][0], roles[Role.VILLAGER][0]
        await service.take_action(session.id, mafia.id, NightAction.KILL, villager.id)
        day = await service.advance_phase(session.id)
        assert day.phase == Phase.DAY
        assert day.day_number == 2
        assert f"{villager.name} was eliminated during the night." in day.game_log
        stored = {p.id: p for p in await service.storage.list_participants(session.id)}
        assert stored[villager.id].status == PlayerStatus.ELIMINATED
        assert all(p.last_action is None for p in stored.values())

    asyncio.run(run())


def test_doctor_heal_saves_target(service):
    async def run():
        session, roles = await _started(service)
        await _to_night(service, session.id)
        mafia, villager, doctor = roles[Role.MAFIA][0], roles[Role.VILLAGER][0], roles[Role.DOCTOR][0]
        await service.take_action(session.id, mafia.id, NightAction.KILL, villager.id)
        await service.take_action(session.id, doctor.id, NightAction.HEAL, villager.id)
        day = await service.advance_phase(session.id)
        assert "Someone was attacked but miraculously survived." in day.game_log
        stored = await service.storage.get_participant(villager.id)
        assert stored.alive

    asyncio.run(run())


def test_night_kill_reaching_parity_ends_game(service):
    async def run():
        session, roles = await _started(service)
        await service.advance_phase(session.id)
        mafia = roles[Role.MAFIA][0]
        villager, doctor = roles[Role.VILLAGER][0], roles[Role.DOCTOR][0]
        # Vote out the detective by day, kill the villager by night: 1 mafia vs 1 doctor
        detective = roles[Role.DETECTIVE][0]
        await service.cast_vote(session.id, villager.id, detective.id)
        await service.advance_phase(session.id)
        await service.take_action(session.id, mafia.id, NightAction.KILL, villager.id)
        ended = await service.advance_phase(session.id)
        assert ended.phase == Phase.ENDED
        assert ended.winner == Winner.MAFIA
        assert ended.game_log[-1] == "Game ended - MAFIA wins!"
        assert (await service.storage.get_participant(doctor.id)).alive

    asyncio.run(run())


def test_investigation_revealed_to_detective_only(service, make_connection):
    async def run():
        session, players = await _lobby(service)
        conns = {p.id: make_connection() for p in players}
        for pid, conn in conns.items():
            await service.hub.register(session.id, conn, pid)
        await service.start_session(session.id)
        roles = await _roles(service, session.id)
        detective, mafia = roles[Role.DETECTIVE][0], roles[Role.MAFIA][0]
        await _to_night(service, session.id)
        await service.take_action(session.id, detective.id, NightAction.INVESTIGATE, mafia.id)
        for conn in conns.values():
            conn.sent.clear()
        day = await service.advance_phase(session.id)
        assert "The detective gathered crucial information." in day.game_log
        reveal = [m for m in conns[detective.id].sent if m["type"] == "role-reveal"]
        assert [m["payload"] for m in reveal] == [{"subject_id": mafia.id, "role": "MAFIA"}]
        for pid, conn in conns.items():
            if pid != detective.id:
                assert "role-reveal" not in conn.types()

    asyncio.run(run())


# ── Ending ────────────────────────────────────────────────────────────────────


def test_advance_from_lobby_rejected(service):
    async def run():
        session, _ = await _lobby(service)
        with pytest.raises(RuleViolation, match="not started"):
            await service.advance_phase(session.id)

    asyncio.run(run())


def test_ended_session_is_frozen(service):
    async def run():
        session, _ = await _started(service)
        ended = await service.end_session(session.id)
        assert ended.phase == Phase.ENDED
        assert ended.winner is None
        before = (await service.get_state(session.id)).model_dump()
        with pytest.raises(RuleViolation, match="ended"):
            await service.advance_phase(session.id)
        with pytest.raises(RuleViolation, match="already ended"):
            await service.end_session(session.id)
        assert (await service.get_state(session.id)).model_dump() == before

    asyncio.run(run())


# ── Chat and narrative ────────────────────────────────────────────────────────


def test_chat_sequence_and_membership(service):
    async def run():
        session, players = await _lobby(service, ready=False)
        first = await service.post_chat_message(session.id, "hello", participant_id=players[0].id)
        second = await service.post_chat_message(session.id, "Night falls", is_system=True)
        assert (first.sequence, second.sequence) == (1, 2)
        with pytest.raises(RuleViolation):
            await service.post_chat_message(session.id, "who am I")
        with pytest.raises(NotFoundError):
            await service.post_chat_message(session.id, "hi", participant_id="stranger")
        state = await service.get_state(session.id)
        assert [m.message for m in state.chat_messages] == ["hello", "Night falls"]

    asyncio.run(run())


def test_narrative_requires_credential(service):
    async def run():
        session, _ = await _started(service)
        with pytest.raises(RuleViolation, match="not configured"):
            await service.request_narrative(session.id, prompt="A storm")

    asyncio.run(run())


def test_narrative_written_back(service, fake_narrator):
    async def run():
        session, _ = await _started(service, narrator_api_key="test-key")
        state = await service.get_state(session.id)
        assert state.session.narrative == fake_narrator.text
        context, api_key = fake_narrator.contexts[0]
        assert (context.phase, context.day_number, context.alive_count) == (Phase.DAY, 1, 4)
        assert api_key == "test-key"

        fake_narrator.text = "Thunder over the chapel."
        text = await service.request_narrative(session.id, prompt="A storm")
        assert text == "Thunder over the chapel."
        assert fake_narrator.contexts[-1][0].custom_prompt == "A storm"
        assert (await service.get_state(session.id)).session.narrative == text

    asyncio.run(run())


def test_summary_written_when_game_is_won(service, fake_narrator):
    async def run():
        session, roles = await _started(service, narrator_api_key="test-key")
        await service.advance_phase(session.id)
        mafia = roles[Role.MAFIA][0]
        for role in (Role.VILLAGER, Role.DOCTOR, Role.DETECTIVE):
            await service.cast_vote(session.id, roles[role][0].id, mafia.id)
        ended = await service.advance_phase(session.id)
        assert ended.narrative == "The villagers prevail."
        assert fake_narrator.summaries[0][0].winner == "VILLAGERS"

    asyncio.run(run())


# ── Atomicity and concurrency ─────────────────────────────────────────────────


class FlakyStorage(MemoryStorage):
    """Fails the Nth participant update after being armed."""

    def __init__(self):
        super().__init__()
        self.fail_on = None
        self.calls = 0

    async def update_participant(self, participant_id, **fields):
        self.calls += 1
        if self.fail_on is not None and self.calls == self.fail_on:
            raise StorageError("store unavailable")
        return await super().update_participant(participant_id, **fields)


def test_start_rolls_back_on_storage_failure(fake_narrator):
    storage = FlakyStorage()
    service = SessionService(storage, BroadcastHub(), narrator=fake_narrator)

    async def run():
        session, _ = await _lobby(service)
        storage.calls, storage.fail_on = 0, 3
        with pytest.raises(StorageError):
            await service.start_session(session.id)
        storage.fail_on = None
        state = await service.get_state(session.id)
        assert state.session.phase == Phase.LOBBY
        assert all(p.role is None for p in await storage.list_participants(session.id))

    asyncio.run(run())


class SlowStorage(MemoryStorage):
    """Yields to the event loop on every read so operations interleave."""

    async def get_session(self, session_id):
        await asyncio.sleep(0)
        return await super().get_session(session_id)

    async def list_participants(self, session_id):
        await asyncio.sleep(0)
        return await super().list_participants(session_id)


def test_concurrent_joins_respect_capacity(fake_narrator):
    service = SessionService(SlowStorage(), BroadcastHub(), narrator=fake_narrator)

    async def run():
        session = await service.create_session("Crowded", capacity=4)
        results = await asyncio.gather(
            *(service.join_session(session.id, f"Player{i}") for i in range(8)),
            return_exceptions=True,
        )
        joined = [r for r in results if not isinstance(r, Exception)]
        assert len(joined) == 4
        assert all(isinstance(r, RuleViolation) for r in results if isinstance(r, Exception))
        stored = await service.storage.list_participants(session.id)
        assert len(stored) == 4
        assert sum(p.is_host for p in stored) == 1

    asyncio.run(run())


def test_concurrent_votes_keep_counters_consistent(fake_narrator):
    service = SessionService(SlowStorage(), BroadcastHub(), narrator=fake_narrator)

    async def run():
        session, roles = await _started(service)
        await service.advance_phase(session.id)
        players = await service.storage.list_participants(session.id)
        votes = []
        for voter in players:
            for target in players:
                if target.id != voter.id:
                    votes.append(service.cast_vote(session.id, voter.id, target.id))
        await asyncio.gather(*votes)
        stored = await service.storage.list_participants(session.id)
        tally = Counter(p.voted_for for p in stored if p.voted_for)
        for p in stored:
            assert p.votes == tally.get(p.id, 0)

    asyncio.run(run())
