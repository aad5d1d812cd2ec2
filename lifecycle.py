"""
Ciclo de Vida del Expediente
============================

Máquina de estados fija del proceso judicial. La tabla de transiciones se
construye una sola vez al importar el módulo: para cada estado destino se
guarda el conjunto de estados previos que lo habilitan.

Una transición hacia T es válida si el historial de estados del expediente
contiene alguno de los predecesores de T, o si T es RADICADO y el historial
está vacío.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional

from sqlalchemy.orm import Session

from exceptions import InvalidTransitionError


class CaseState(str, Enum):
    RADICADO = "RADICADO"
    INADMITIDO = "INADMITIDO"
    SUBSANACION = "SUBSANACION"
    ADMITE = "ADMITE"
    NOTIFICACION_PERSONAL = "NOTIFICACION_PERSONAL"
    CONTESTACION_DEMANDA = "CONTESTACION_DEMANDA"
    INADMITE_CONTESTACION = "INADMITE_CONTESTACION"
    ADMISION_CONTESTACION = "ADMISION_CONTESTACION"
    FIJA_AUDIENCIA = "FIJA_AUDIENCIA"
    CELEBRA_AUDIENCIA = "CELEBRA_AUDIENCIA"
    CONCILIADO = "CONCILIADO"
    ARCHIVADO = "ARCHIVADO"
    RETIRO_DEMANDA = "RETIRO_DEMANDA"
    FINALIZADO_SENTENCIA = "FINALIZADO_SENTENCIA"
    FINALIZADO_RECHAZO = "FINALIZADO_RECHAZO"
    RADICA_IMPULSO_PROCESAL = "RADICA_IMPULSO_PROCESAL"


INITIAL_STATE = CaseState.RADICADO

FINAL_STATES: FrozenSet[CaseState] = frozenset({
    CaseState.ARCHIVADO,
    CaseState.RETIRO_DEMANDA,
    CaseState.FINALIZADO_SENTENCIA,
    CaseState.FINALIZADO_RECHAZO,
    CaseState.CONCILIADO,
})

# Alcanzables desde cualquier estado no final
UNIVERSAL_TERMINALS: FrozenSet[CaseState] = frozenset({
    CaseState.ARCHIVADO,
    CaseState.RETIRO_DEMANDA,
})


@dataclass(frozen=True)
class Transition:
    allowed_from: FrozenSet[CaseState]
    to: CaseState
    description: str


def _build_transitions() -> Dict[CaseState, Transition]:
    non_final = frozenset(s for s in CaseState if s not in FINAL_STATES)
    after_admission = frozenset({
        CaseState.ADMITE,
        CaseState.NOTIFICACION_PERSONAL,
        CaseState.CONTESTACION_DEMANDA,
        CaseState.INADMITE_CONTESTACION,
        CaseState.ADMISION_CONTESTACION,
        CaseState.FIJA_AUDIENCIA,
        CaseState.CELEBRA_AUDIENCIA,
    })

    rules = [
        Transition(frozenset(), CaseState.RADICADO,
                   "Primer estado - Radicación de la demanda"),
        Transition(frozenset({CaseState.RADICADO}), CaseState.INADMITIDO,
                   "Solo después de radicado"),
        Transition(frozenset({CaseState.INADMITIDO}), CaseState.SUBSANACION,
                   "Solo después de inadmitida la demanda"),
        Transition(frozenset({CaseState.RADICADO, CaseState.SUBSANACION}), CaseState.ADMITE,
                   "Solo después de radicado o subsanada la demanda"),
        Transition(frozenset({CaseState.ADMITE}), CaseState.NOTIFICACION_PERSONAL,
                   "Solo después de admitida la demanda"),
        Transition(frozenset({CaseState.NOTIFICACION_PERSONAL}), CaseState.CONTESTACION_DEMANDA,
                   "Solo después de la notificación personal"),
        Transition(frozenset({CaseState.CONTESTACION_DEMANDA}), CaseState.INADMITE_CONTESTACION,
                   "Puede ocurrir después de contestada la demanda"),
        Transition(frozenset({CaseState.CONTESTACION_DEMANDA, CaseState.INADMITE_CONTESTACION}),
                   CaseState.ADMISION_CONTESTACION,
                   "Después de la contestación o de su inadmisión"),
        Transition(frozenset({CaseState.ADMISION_CONTESTACION}), CaseState.FIJA_AUDIENCIA,
                   "Después de la admisión de la contestación"),
        Transition(frozenset({CaseState.FIJA_AUDIENCIA}), CaseState.CELEBRA_AUDIENCIA,
                   "Después de fijar audiencia"),
        Transition(frozenset({CaseState.CELEBRA_AUDIENCIA}), CaseState.CONCILIADO,
                   "Después de celebrar audiencia"),
        Transition(frozenset({CaseState.CELEBRA_AUDIENCIA}), CaseState.FINALIZADO_SENTENCIA,
                   "Después de celebrar audiencia"),
        Transition(non_final | {CaseState.CONCILIADO}, CaseState.ARCHIVADO,
                   "En cualquier momento después de radicado"),
        Transition(non_final | {CaseState.CONCILIADO}, CaseState.RETIRO_DEMANDA,
                   "En cualquier momento después de radicado"),
        Transition(frozenset({CaseState.RADICADO, CaseState.SUBSANACION}), CaseState.FINALIZADO_RECHAZO,
                   "Después de radicado o subsanación incorrecta"),
        Transition(after_admission, CaseState.RADICA_IMPULSO_PROCESAL,
                   "Impulso procesal mientras el proceso está en trámite"),
    ]
    return {rule.to: rule for rule in rules}


TRANSITIONS: Dict[CaseState, Transition] = _build_transitions()


def _as_states(history: Iterable) -> List[CaseState]:
    states = []
    for item in history:
        try:
            states.append(CaseState(item))
        except ValueError:
            # Actuaciones de texto libre no cuentan como estado
            continue
    return states


def is_valid(history: Iterable, target) -> bool:
    states = _as_states(history)
    target = CaseState(target)

    if target == INITIAL_STATE and not states:
        return True

    rule = TRANSITIONS.get(target)
    if rule is None or not rule.allowed_from:
        return False

    return any(state in rule.allowed_from for state in states)


def next_valid_states(history: Iterable) -> List[CaseState]:
    """Estados alcanzables desde el historial, en el orden de la tabla."""
    states = _as_states(history)
    return [target for target in TRANSITIONS if is_valid(states, target)]


def validate(history: Iterable, target) -> None:
    """Lanza InvalidTransitionError con las alternativas válidas si la transición no aplica."""
    states = _as_states(history)
    if not is_valid(states, target):
        raise InvalidTransitionError(
            current=[s.value for s in states],
            requested=CaseState(target).value,
            valid=[s.value for s in next_valid_states(states)],
        )


def is_final(state) -> bool:
    return CaseState(state) in FINAL_STATES


def describe(target) -> str:
    rule = TRANSITIONS.get(CaseState(target))
    return rule.description if rule else "Transición no definida"


def state_flow() -> dict:
    return {
        "states": [s.value for s in CaseState],
        "final_states": sorted(s.value for s in FINAL_STATES),
        "transitions": [
            {
                "from": sorted(s.value for s in rule.allowed_from),
                "to": rule.to.value,
                "description": rule.description,
            }
            for rule in TRANSITIONS.values()
        ],
    }


def case_history(db: Session, case_id: int) -> List[CaseState]:
    """Estados registrados como actuaciones del expediente, en orden de creación."""
    from crud import EventStore

    return _as_states(EventStore(db).list_types(case_id))


def apply_transition(
    db: Session,
    case,
    target,
    responsible: str,
    note: Optional[str] = None,
):
    """
    Valida y aplica una transición: registra la actuación y actualiza el
    estado del expediente.
    """
    from crud import EventStore

    target = CaseState(target)
    history = case_history(db, case.id)
    validate(history, target)

    events = EventStore(db)
    event = events.find_by_case_and_type(case.id, target.value)
    if event is None:
        event = events.create({
            "case_id": case.id,
            "event_type": target.value,
            "responsible": responsible,
            "note": note or describe(target),
        })
    case.state = target.value
    db.commit()
    db.refresh(case)
    return event
