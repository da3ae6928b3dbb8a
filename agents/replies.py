"""
Spoken reply templates.

Every line the receptionist says on the deterministic path comes from here.
Some keys carry several phrasings so repeat callers do not hear the exact
same sentence every time; the variant is chosen from a seed derived from the
call id and step, so the same (state, input) always produces the same text.
"""
import zlib
from typing import Dict, List, Optional

from app.models import AppointmentType, ConversationState, Language

from .specs import TYPE_LABELS

_ES = Language.ES
_EN = Language.EN

REPLIES: Dict[str, Dict[Language, List[str]]] = {
    # Language selection
    "ask_language": {
        _ES: [
            "Gracias por llamar a {business}. Para español, diga uno o marque 1. "
            "For English, say two or press 2."
        ],
        _EN: [
            "Gracias por llamar a {business}. Para español, diga uno o marque 1. "
            "For English, say two or press 2."
        ],
    },
    "ask_language_retry": {
        _ES: ["Para español, diga uno o marque 1. For English, say two or press 2."],
        _EN: ["Para español, diga uno o marque 1. For English, say two or press 2."],
    },

    # Identification
    "ask_customer_name": {
        _ES: ["Para ayudarle, ¿me puede decir su nombre completo, o el teléfono o email con el que está registrado?"],
        _EN: ["To help you, could you tell me your full name, or the phone number or email you registered with?"],
    },
    "ask_customer_name_retry": {
        _ES: [
            "No encontré ese nombre en el sistema. ¿Me lo puede repetir, o darme su teléfono o email?",
            "No logro encontrarle con ese dato. ¿Me dice su nombre completo, o su teléfono o email?",
        ],
        _EN: [
            "I couldn't find that name in our system. Could you repeat it, or give me your phone or email?",
            "I can't find you with that. Could you tell me your full name, or your phone or email?",
        ],
    },
    "ask_customer_name_degraded": {
        _ES: ["Estoy teniendo problemas para consultar el sistema en este momento. ¿Me repite su nombre completo, por favor?"],
        _EN: ["I'm having trouble reaching our system right now. Could you repeat your full name, please?"],
    },
    "confirm_identity": {
        _ES: ["Encontré a {name}{phone_hint}. ¿Es usted?"],
        _EN: ["I found {name}{phone_hint}. Is that you?"],
    },
    "confirm_identity_retry": {
        _ES: ["¿Usted es {name}? Por favor diga sí o no."],
        _EN: ["Are you {name}? Please say yes or no."],
    },
    "disambiguate": {
        _ES: ["Encontré varios clientes: {options}. ¿Cuál es usted? Puede decir el número o su nombre."],
        _EN: ["I found several customers: {options}. Which one are you? You can say the number or your name."],
    },
    "manual_registration": {
        _ES: ["Disculpe, estoy teniendo dificultades técnicas. Para registrarle, ¿me dice su nombre completo?"],
        _EN: ["Sorry, I'm having technical difficulties. To register you, could you tell me your full name?"],
    },
    "manual_registration_retry": {
        _ES: ["¿Me dice su nombre y apellido, por favor?"],
        _EN: ["Could you tell me your first and last name, please?"],
    },
    "agent_reask": {
        _ES: ["¿Me puede dar algún otro dato para encontrarle, como su teléfono o el nombre del asesor que le atendió?"],
        _EN: ["Could you give me something else to find you, like your phone or the name of the advisor who helped you?"],
    },

    # Appointment flow
    "greeting": {
        _ES: [
            "¡Hola, {name}! Bienvenido de nuevo a {business}. ¿Desea agendar una cita de cotización, instalación o reparación?",
            "¡Qué gusto saludarlo, {name}! ¿Su cita sería para cotización, instalación o reparación?",
            "Hola, {name}, un placer atenderle. ¿Le agendo una cita de cotización, instalación o reparación?",
        ],
        _EN: [
            "Hi {name}! Welcome back to {business}. Would you like to book a quote, installation, or repair?",
            "Hello {name}! Great to hear from you. Is your appointment for a quote, installation, or repair?",
            "Hi there, {name}! Shall I book you a quote, installation, or repair?",
        ],
    },
    "ask_type": {
        _ES: ["¿La cita es para cotización, instalación o reparación?"],
        _EN: ["Is the appointment for a quote, installation, or repair?"],
    },
    "ask_type_retry": {
        _ES: ["Tenemos cotización para ver precios, instalación de cortinas nuevas, o reparación. ¿Cuál necesita?"],
        _EN: ["We offer quotes for pricing, installation of new blinds, or repairs. Which one do you need?"],
    },
    "ask_date": {
        _ES: ["{ack}, {type}. ¿Para qué día le gustaría la cita?"],
        _EN: ["{ack}, a {type}. What day would you like the appointment?"],
    },
    "ask_date_retry": {
        _ES: ["No entendí la fecha. ¿Qué día prefiere? Por ejemplo, mañana o el lunes."],
        _EN: ["I didn't catch the date. What day works for you? For example, tomorrow or Monday."],
    },
    "ask_time": {
        _ES: ["{ack}, el {date}. ¿A qué hora le queda bien?"],
        _EN: ["{ack}, {date}. What time works for you?"],
    },
    "ask_time_retry": {
        _ES: ["No entendí la hora. ¿A qué hora prefiere? Por ejemplo, a las 10 o a las 3 de la tarde."],
        _EN: ["I didn't catch the time. What time do you prefer? For example, 10 AM or 3 PM."],
    },
    "ask_duration": {
        _ES: [
            "{ack}, el {date}. La cita dura normalmente una hora. "
            "¿Le parece bien, o prefiere media hora, hora y media o dos horas?"
        ],
        _EN: [
            "{ack}, {date}. Appointments usually take one hour. "
            "Is that okay, or would you prefer 30 minutes, an hour and a half, or two hours?"
        ],
    },
    "ask_duration_retry": {
        _ES: ["¿Cuánto tiempo necesita: media hora, una hora, hora y media o dos horas?"],
        _EN: ["How long do you need: 30 minutes, one hour, an hour and a half, or two hours?"],
    },
    "confirm_summary": {
        _ES: ["Le confirmo: {type} para {name}, el {date}, con duración de {duration}. ¿Es correcto?"],
        _EN: ["Let me confirm: a {type} for {name}, {date}, lasting {duration}. Is that correct?"],
    },
    "confirm_summary_retry": {
        _ES: ["¿Confirmo la cita? Por favor diga sí o no."],
        _EN: ["Shall I book the appointment? Please say yes or no."],
    },
    "restart": {
        _ES: ["De acuerdo, empecemos de nuevo. ¿La cita es para cotización, instalación o reparación?"],
        _EN: ["All right, let's start over. Is the appointment for a quote, installation, or repair?"],
    },
    "creating_appointment": {
        _ES: ["Un momento, por favor, estoy registrando su cita."],
        _EN: ["One moment please, I'm booking your appointment."],
    },

    # Terminal
    "completed": {
        _ES: ["¡Listo! Su cita quedó registrada para el {date}. {goodbye}"],
        _EN: ["All set! Your appointment is booked for {date}. {goodbye}"],
    },
    "completed_closing": {
        _ES: ["Su cita ya está registrada. {goodbye}"],
        _EN: ["Your appointment is already booked. {goodbye}"],
    },
    "transfer": {
        _ES: ["Le voy a comunicar con una persona de nuestro equipo. Un momento, por favor."],
        _EN: ["I'll connect you with someone from our team. One moment, please."],
    },
    "booking_failed": {
        _ES: ["Lo siento, no pude registrar la cita en el sistema. Le comunico con una persona de nuestro equipo."],
        _EN: ["I'm sorry, I couldn't book the appointment in our system. I'll connect you with someone from our team."],
    },
    "goodbye": {
        _ES: [
            "¡Que tenga un excelente día!",
            "¡Muchas gracias por llamar! Que le vaya muy bien.",
            "Fue un placer atenderle. ¡Que tenga un gran día!",
        ],
        _EN: [
            "Have a wonderful day!",
            "Thank you so much for calling! Have a great one.",
            "It was a pleasure helping you. Have a wonderful day!",
        ],
    },

    # Generic
    "ack": {
        _ES: ["Perfecto", "Muy bien", "Entendido", "De acuerdo"],
        _EN: ["Perfect", "Great", "Got it", "Sounds good"],
    },
    "didnt_hear": {
        _ES: ["Disculpe, no le escuché."],
        _EN: ["Sorry, I didn't hear you."],
    },
    "error_apology": {
        _ES: ["Disculpe, tuve un problema. ¿Me puede repetir, por favor?"],
        _EN: ["Sorry, I had a problem. Could you say that again, please?"],
    },
}

DURATION_LABELS: Dict[Language, Dict[str, str]] = {
    _ES: {
        "00:30:00": "media hora",
        "01:00:00": "una hora",
        "01:30:00": "hora y media",
        "02:00:00": "dos horas",
    },
    _EN: {
        "00:30:00": "30 minutes",
        "01:00:00": "one hour",
        "01:30:00": "an hour and a half",
        "02:00:00": "two hours",
    },
}


def variant_seed(state: ConversationState) -> int:
    """Stable per-call, per-step seed for picking a phrasing."""
    return zlib.crc32(f"{state.call_id}:{state.step.value}".encode("utf-8"))


def reply(key: str, language: Language, seed: int = 0, **values: object) -> str:
    """
    Render a reply template.

    Args:
        key: Template key in REPLIES
        language: Spoken language
        seed: Selects among the phrasings of the key
        **values: Template placeholders

    Raises:
        KeyError: unknown template key
    """
    variants = REPLIES[key][language]
    template = variants[seed % len(variants)]
    return template.format(**values)


def type_label(appointment_type: Optional[AppointmentType], language: Language) -> str:
    if appointment_type is None:
        return ""
    return TYPE_LABELS[language][AppointmentType(appointment_type)]


def duration_label(duration: str, language: Language) -> str:
    return DURATION_LABELS[language].get(duration, duration)
