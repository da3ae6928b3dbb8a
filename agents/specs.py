"""
StepSpec definitions.

This module declares, for every conversational step, what the receptionist
is trying to obtain and which structured fields the extraction adapter must
return. The dispatcher and the extractor read these specs instead of
branching on step names for prompt content.

Python 3.9 compatible - uses typing.Dict, typing.List, typing.Optional
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from app.models import AppointmentType, ConversationState, ConversationStep, Language


@dataclass
class StepSpec:
    """
    Specification for one extraction-backed step.

    Attributes:
        step: The conversation step this spec drives
        goal_es / goal_en: What the receptionist needs from the caller
        extract_fields: JSON shape the model must fill ("data" object)
        field_names: Keys of extract_fields, in declaration order
        hint_es / hint_en: Optional fixed context appended to the prompt
    """
    step: ConversationStep
    goal_es: str
    goal_en: str
    extract_fields: str
    field_names: List[str] = field(default_factory=list)
    hint_es: Optional[str] = None
    hint_en: Optional[str] = None

    def goal(self, language: Language) -> str:
        return self.goal_en if language == Language.EN else self.goal_es

    def hint(self, language: Language) -> Optional[str]:
        return self.hint_en if language == Language.EN else self.hint_es


@dataclass
class StepContext:
    """Per-turn context handed to the extraction adapter. Never persisted."""
    step: ConversationStep
    goal: str
    extract_fields: str
    field_names: List[str]
    extra: Optional[str] = None


# =============================================================================
# STEP REGISTRY
# =============================================================================

STEP_SPECS: Dict[ConversationStep, StepSpec] = {
    ConversationStep.GREETING: StepSpec(
        step=ConversationStep.GREETING,
        goal_es=(
            "El cliente fue identificado. Si menciona una cita, pregunta de inmediato "
            "si es para cotización, instalación o reparación."
        ),
        goal_en=(
            "Customer identified. If they mention an appointment, immediately ask "
            "whether it is for a quote, installation, or repair."
        ),
        extract_fields='{"wantsAppointment": true|false, "appointmentType": 0|1|2|null}',
        field_names=["wantsAppointment", "appointmentType"],
    ),
    ConversationStep.ASK_TYPE: StepSpec(
        step=ConversationStep.ASK_TYPE,
        goal_es=(
            "Determinar si la cita es para COTIZACIÓN (0), INSTALACIÓN (1) o REPARACIÓN (2). "
            "Si el cliente no sabe, explica las opciones brevemente y vuelve a preguntar."
        ),
        goal_en=(
            "Determine if the appointment is for a QUOTE (0), INSTALLATION (1), or REPAIR (2). "
            "If the caller is unsure, briefly explain the options and ask again."
        ),
        extract_fields='{"appointmentType": 0|1|2|null}',
        field_names=["appointmentType"],
        hint_es=(
            "Cotización = ver precios sin compromiso, Instalación = poner cortinas nuevas, "
            "Reparación = arreglar las existentes."
        ),
        hint_en="Quote = pricing without commitment, Installation = new blinds, Repair = fix existing ones.",
    ),
    ConversationStep.ASK_DATE: StepSpec(
        step=ConversationStep.ASK_DATE,
        goal_es=(
            'Obtener la FECHA de la cita. Puede ser relativa ("mañana", "el lunes") '
            'o absoluta ("20 de marzo").'
        ),
        goal_en=(
            'Get the DATE for the appointment. It can be relative ("tomorrow", "next Monday") '
            'or absolute ("March 20th").'
        ),
        extract_fields='{"dateText": "raw date text from the caller"|null}',
        field_names=["dateText"],
    ),
    ConversationStep.ASK_TIME: StepSpec(
        step=ConversationStep.ASK_TIME,
        goal_es='Obtener la HORA de la cita. Ej: "a las 10", "2 de la tarde", "10 AM".',
        goal_en='Get the TIME for the appointment. E.g. "at 10", "2 PM", "10 o\'clock".',
        extract_fields='{"timeText": "raw time text"|null}',
        field_names=["timeText"],
    ),
    ConversationStep.ASK_DURATION: StepSpec(
        step=ConversationStep.ASK_DURATION,
        goal_es=(
            'Confirmar la DURACIÓN: 30 min, 1 hora (estándar), 1.5 horas o 2 horas. '
            'Si dice "sí/ok/está bien" = 1 hora.'
        ),
        goal_en=(
            'Confirm the DURATION: 30 min, 1 hour (standard), 1.5 hours, or 2 hours. '
            'If they say "yes/ok/fine" = 1 hour.'
        ),
        extract_fields='{"duration": "00:30:00"|"01:00:00"|"01:30:00"|"02:00:00"|null}',
        field_names=["duration"],
    ),
    ConversationStep.CONFIRM_SUMMARY: StepSpec(
        step=ConversationStep.CONFIRM_SUMMARY,
        goal_es="El cliente debe CONFIRMAR (sí) o RECHAZAR (no) el resumen de la cita.",
        goal_en="The caller must CONFIRM (yes) or REJECT (no) the appointment summary.",
        extract_fields='{"confirmed": true|false|null}',
        field_names=["confirmed"],
    ),
    ConversationStep.CONFIRM_CUSTOMER_IDENTITY: StepSpec(
        step=ConversationStep.CONFIRM_CUSTOMER_IDENTITY,
        goal_es="Confirmar si la persona que llama ES el cliente encontrado. Respuesta: sí o no.",
        goal_en="Confirm whether the caller IS the customer that was found. Answer: yes or no.",
        extract_fields='{"confirmed": true|false|null}',
        field_names=["confirmed"],
    ),
    ConversationStep.DISAMBIGUATE_CUSTOMER: StepSpec(
        step=ConversationStep.DISAMBIGUATE_CUSTOMER,
        goal_es="El cliente debe elegir una de las opciones. Puede decir el número o su nombre.",
        goal_en="The caller must choose one of the options. They can say the number or their name.",
        extract_fields='{"choiceNumber": 1-5|null, "nameSpoken": "name"|null}',
        field_names=["choiceNumber", "nameSpoken"],
    ),
    ConversationStep.ASK_CUSTOMER_NAME: StepSpec(
        step=ConversationStep.ASK_CUSTOMER_NAME,
        goal_es="Obtener el NOMBRE COMPLETO del cliente, o su teléfono o email para buscarlo.",
        goal_en="Get the customer's FULL NAME, or their phone or email to look them up.",
        extract_fields='{"searchQuery": "the name/phone/email they said"|null}',
        field_names=["searchQuery"],
    ),
}


TYPE_LABELS: Dict[Language, Dict[AppointmentType, str]] = {
    Language.ES: {
        AppointmentType.QUOTE: "cotización",
        AppointmentType.INSTALLATION: "instalación",
        AppointmentType.REPAIR: "reparación",
    },
    Language.EN: {
        AppointmentType.QUOTE: "quote",
        AppointmentType.INSTALLATION: "installation",
        AppointmentType.REPAIR: "repair",
    },
}


def get_step_spec(step: ConversationStep) -> Optional[StepSpec]:
    """Get the spec for a step, or None for steps that never call the adapter."""
    return STEP_SPECS.get(step)


def build_step_context(
    state: ConversationState,
    extra: Optional[str] = None,
) -> Optional[StepContext]:
    """
    Build the ephemeral StepContext for the state's current step.

    Args:
        state: Current conversation state
        extra: Turn-specific context (candidate list, summary, ...)

    Returns:
        StepContext, or None when the step has no extraction spec
    """
    spec = get_step_spec(state.step)
    if spec is None:
        return None

    lang = state.language
    parts: List[str] = []
    if state.customer_confirmed_name:
        label = "Customer" if lang == Language.EN else "Cliente"
        parts.append(f"{label}: {state.customer_confirmed_name}.")
    if state.step == ConversationStep.ASK_CUSTOMER_NAME and state.identification_attempts > 0:
        label = "Attempt" if lang == Language.EN else "Intento"
        parts.append(f"{label} {state.identification_attempts + 1}/3.")
    hint = spec.hint(lang)
    if hint:
        parts.append(hint)
    if extra:
        parts.append(extra)

    return StepContext(
        step=spec.step,
        goal=spec.goal(lang),
        extract_fields=spec.extract_fields,
        field_names=list(spec.field_names),
        extra=" ".join(parts) or None,
    )
