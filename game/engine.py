"""Game engine: pure resolvers, no I/O and no shared state."""

import random
from collections import Counter
from dataclasses import replace
from typing import Iterable, Optional

from game.rules import (
    ROLE_ACTIONS,
    ROLE_ORDER,
    NightAction,
    Phase,
    Role,
    Winner,
)
from game.state import (
    Investigation,
    NightResolution,
    Participant,
    VoteTally,
)


def default_role_distribution(player_count: int) -> dict[Role, int]:
    """Distribution used when a session has none configured."""
    mafia_count = max(1, player_count // 3)
    doctor_count = 1
    detective_count = 1
    villager_count = max(1, player_count - mafia_count - doctor_count - detective_count)
    return {
        Role.VILLAGER: villager_count,
        Role.DOCTOR: doctor_count,
        Role.DETECTIVE: detective_count,
        Role.MAFIA: mafia_count,
    }


def assign_roles(
    participant_ids: list[str],
    distribution: dict[Role, int],
    rng: Optional[random.Random] = None,
) -> dict[str, Role]:
    """
    Shuffle participants and hand out roles slot by slot in ROLE_ORDER.
    Participants left over once the distribution is exhausted get no entry.
    """
    rng = rng or random.Random()
    shuffled = list(participant_ids)
    rng.shuffle(shuffled)

    assignments: dict[str, Role] = {}
    index = 0
    for role in ROLE_ORDER:
        for _ in range(distribution.get(role, 0)):
            if index >= len(shuffled):
                return assignments
            assignments[shuffled[index]] = role
            index += 1
    return assignments


def check_win_condition(participants: Iterable[Participant]) -> Optional[Winner]:
    """Return the winning faction, or None while the game goes on."""
    alive = [p for p in participants if p.alive]
    mafia_alive = sum(1 for p in alive if p.role == Role.MAFIA)
    others_alive = len(alive) - mafia_alive
    if mafia_alive == 0:
        return Winner.VILLAGERS
    if mafia_alive >= others_alive:
        return Winner.MAFIA
    return None


def _clear_night_action(participant: Participant) -> Participant:
    if participant.last_action is None and participant.action_target is None:
        return participant
    return replace(participant, last_action=None, action_target=None)


def resolve_night_actions(participants: list[Participant]) -> NightResolution:
    """
    Resolve heals, then kills, then investigations.

    Every mafia kill is checked on its own against the same protected set, so one heal
    saves its target from any number of attackers but nobody else. Each attacker emits its
    own event; the eliminated list holds every target once. Investigation results are
    returned separately and never enter the shared event list. All pending actions are
    cleared in the returned roster.
    """
    by_id = {p.id: p for p in participants}
    acting = [p for p in participants if p.alive and p.last_action and p.action_target]
    resolution = NightResolution()

    for doctor in acting:
        if doctor.role == Role.DOCTOR and doctor.last_action == NightAction.HEAL:
            resolution.protected.add(doctor.action_target)
            resolution.events.append("The doctor protected someone from harm.")

    for mafia in acting:
        if mafia.role != Role.MAFIA or mafia.last_action != NightAction.KILL:
            continue
        target = by_id.get(mafia.action_target)
        if target is None or not target.alive:
            continue
        if target.id in resolution.protected:
            resolution.events.append("Someone was attacked but miraculously survived.")
        else:
            if target.id not in resolution.eliminated:
                resolution.eliminated.append(target.id)
            resolution.events.append(f"{target.name} was eliminated during the night.")

    for detective in acting:
        if detective.role == Role.DETECTIVE and detective.last_action == NightAction.INVESTIGATE:
            target = by_id.get(detective.action_target)
            resolution.investigations.append(
                Investigation(
                    detective_id=detective.id,
                    target_id=detective.action_target,
                    role=target.role if target else None,
                )
            )
            resolution.events.append("The detective gathered crucial information.")

    resolution.participants = [_clear_night_action(p) for p in participants]
    return resolution


def tally_votes(participants: list[Participant]) -> VoteTally:
    """
    Count the vote targets of alive voters. The unique top target is eliminated;
    an empty tally or a shared maximum eliminates nobody. Alive participants come
    back with their vote counter and target reset.
    """
    counts = Counter(p.voted_for for p in participants if p.alive and p.voted_for)
    eliminated_id: Optional[str] = None
    if counts:
        max_votes = max(counts.values())
        leaders = [target_id for target_id, c in counts.items() if c == max_votes]
        if len(leaders) == 1:
            eliminated_id = leaders[0]

    reset = [
        replace(p, votes=0, voted_for=None) if p.alive and (p.votes or p.voted_for) else p
        for p in participants
    ]
    return VoteTally(eliminated_id=eliminated_id, counts=dict(counts), participants=reset)


def valid_targets(
    actor: Participant,
    participants: list[Participant],
    phase: Phase,
) -> list[Participant]:
    """Participants the actor may target in this phase (votes by day, actions by night)."""
    others = [p for p in participants if p.alive and p.id != actor.id]
    if phase == Phase.VOTING:
        return others
    if phase != Phase.NIGHT or actor.role not in ROLE_ACTIONS:
        return []
    if actor.role == Role.MAFIA:
        return [p for p in others if p.role != Role.MAFIA]
    return others
