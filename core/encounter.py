"""
Encounter Tracker: initiative order with a rotating turn pointer

States:
    Idle   (active=False, empty order)
    Active (GM started; initiative may be set and turns advanced)
"""
from core.exceptions import InvalidStateTransition
from models import EncounterState, InitiativeEntry, Lobby


def start(lobby: Lobby) -> EncounterState:
    """Idle/Active -> Active with an empty order (restarting resets)"""
    lobby.encounter = EncounterState(active=True)
    lobby.touch()
    return lobby.encounter


def end(lobby: Lobby) -> EncounterState:
    lobby.encounter = EncounterState(active=False)
    lobby.touch()
    return lobby.encounter


def set_initiative(lobby: Lobby, name: str, value: int) -> EncounterState:
    """
    Upsert a combatant and keep the order sorted by initiative, highest first

    Tie-break: list.sort is stable, so equal values keep their prior
    relative order and a newcomer lands after existing equals. The turn
    pointer follows whoever held the turn before the re-sort.

    Raises:
        InvalidStateTransition: no active encounter
    """
    encounter = lobby.encounter
    if not encounter.active:
        raise InvalidStateTransition("No active encounter.")

    current = encounter.order[encounter.turn_index].name if encounter.order else None

    for entry in encounter.order:
        if entry.name == name:
            entry.initiative = value
            break
    else:
        encounter.order.append(InitiativeEntry(name=name, initiative=value))

    encounter.order.sort(key=lambda e: e.initiative, reverse=True)

    if current is not None:
        encounter.turn_index = next(
            i for i, e in enumerate(encounter.order) if e.name == current
        )
    else:
        encounter.turn_index = 0
    lobby.touch()
    return encounter


def advance(lobby: Lobby) -> InitiativeEntry:
    """
    Move the pointer to the next combatant, wrapping around

    Returns:
        the combatant whose turn it now is

    Raises:
        InvalidStateTransition: encounter inactive or empty
    """
    encounter = lobby.encounter
    if not encounter.active or not encounter.order:
        raise InvalidStateTransition("No active encounter.")
    encounter.turn_index = (encounter.turn_index + 1) % len(encounter.order)
    lobby.touch()
    return encounter.order[encounter.turn_index]
