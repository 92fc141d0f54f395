"""
Outbound reply descriptors and localized message templates.

Replies are plain data for the transport: either a text message or an
interactive card with at most three buttons.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from quickbook.core.schedule.model import SlotCandidate

logger = logging.getLogger(__name__)

MAX_OPTIONS = 3
MAX_LABEL_LENGTH = 20   # Messaging platforms truncate longer button titles


class ReplyKind(str, Enum):
    TEXT = "text"
    INTERACTIVE = "interactive"


@dataclass(frozen=True)
class ReplyOption:
    """One button on an interactive card."""

    label: str
    payload_id: str


@dataclass
class ReplyDescriptor:
    """What to send back to the customer."""

    kind: ReplyKind
    body: str
    options: list[ReplyOption] = field(default_factory=list)

    def __post_init__(self):
        if len(self.options) > MAX_OPTIONS:
            raise ValueError(f"Interactive replies carry at most {MAX_OPTIONS} options")
        if self.kind == ReplyKind.TEXT and self.options:
            raise ValueError("Text replies carry no options")

    @classmethod
    def text(cls, body: str) -> "ReplyDescriptor":
        return cls(kind=ReplyKind.TEXT, body=body)

    @classmethod
    def interactive(cls, body: str, options: list[ReplyOption]) -> "ReplyDescriptor":
        return cls(kind=ReplyKind.INTERACTIVE, body=body, options=list(options))

    def to_dict(self) -> dict:
        """Convert to dictionary for the transport."""
        result = {"kind": self.kind.value, "body": self.body}
        if self.kind == ReplyKind.INTERACTIVE:
            result["options"] = [
                {"label": o.label, "payload_id": o.payload_id} for o in self.options
            ]
        return result

    @classmethod
    def from_dict(cls, data: dict) -> "ReplyDescriptor":
        """Create from stored dict."""
        return cls(
            kind=ReplyKind(data["kind"]),
            body=data["body"],
            options=[
                ReplyOption(label=o["label"], payload_id=o["payload_id"])
                for o in data.get("options", [])
            ],
        )


TEMPLATES: dict[str, dict[str, str]] = {
    "ask_service": {
        "en": "Which service would you like to book?{services}",
        "es": "¿Qué servicio te gustaría reservar?{services}",
        "ru": "На какую услугу вас записать?{services}",
    },
    "ask_date": {
        "en": "What day would you like to come in for {service}?",
        "es": "¿Qué día te gustaría venir para {service}?",
        "ru": "В какой день вам удобно прийти на {service}?",
    },
    "ask_time": {
        "en": "What time on {day} works for you?",
        "es": "¿A qué hora te viene bien el {day}?",
        "ru": "В какое время {day} вам удобно?",
    },
    "restate": {
        "en": "Sorry, I didn't quite get that 🙏\n\nCould you tell me the service, day and time you'd like?",
        "es": "Perdona, no lo entendí bien 🙏\n\n¿Me dices el servicio, el día y la hora que prefieres?",
        "ru": "Извините, я не совсем понял 🙏\n\nНапишите, пожалуйста, услугу, день и время.",
    },
    "offer": {
        "en": "Here are free slots for {service} on {day} near {time}:",
        "es": "Aquí están los horarios libres para {service} el {day} cerca de {time}:",
        "ru": "Вот свободные слоты на {service} на {day} рядом с {time}:",
    },
    "offer_flexible": {
        "en": "Here are free slots for {service} on {day}:",
        "es": "Aquí están los horarios libres para {service} el {day}:",
        "ru": "Вот свободные слоты на {service} на {day}:",
    },
    "offer_widened": {
        "en": "Oh! {day} is fully booked 📅\n\nBut I have options for you:",
        "es": "¡Oh! {day} está completamente reservado 📅\n\nPero tengo opciones para ti:",
        "ru": "Ой! {day} полностью занят 📅\n\nНо у меня есть для вас варианты:",
    },
    "no_slots": {
        "en": "Unfortunately, I couldn't find suitable options in the near future 😔\n\nTry selecting a different date or contact the salon directly 📞",
        "es": "Desafortunadamente, no encontré opciones adecuadas en el futuro cercano 😔\n\nIntenta seleccionar otra fecha o contacta al salón directamente 📞",
        "ru": "К сожалению, я не нашёл подходящих вариантов в ближайшее время 😔\n\nПопробуйте выбрать другую дату или свяжитесь с салоном напрямую 📞",
    },
    "no_slots_after_conflict": {
        "en": "Sorry, someone just took that time 😔 and I couldn't find other free options soon.\n\nTry another date or contact the salon directly 📞",
        "es": "Lo siento, alguien acaba de reservar ese horario 😔 y no encontré otras opciones libres pronto.\n\nIntenta otra fecha o contacta al salón directamente 📞",
        "ru": "Извините, это время только что заняли 😔, и других свободных вариантов в ближайшее время нет.\n\nПопробуйте другую дату или свяжитесь с салоном напрямую 📞",
    },
    "confirm_prompt": {
        "en": "{service} with {staff}\n{day} at {time}\n\nShall I book it?",
        "es": "{service} con {staff}\n{day} a las {time}\n\n¿Lo reservo?",
        "ru": "{service}, мастер {staff}\n{day} в {time}\n\nЗаписать вас?",
    },
    "booked": {
        "en": "You're booked! ✅\n\n{service} with {staff}, {day} at {time}.\nBooking code: {code}",
        "es": "¡Reserva confirmada! ✅\n\n{service} con {staff}, {day} a las {time}.\nCódigo de reserva: {code}",
        "ru": "Вы записаны! ✅\n\n{service}, мастер {staff}, {day} в {time}.\nКод записи: {code}",
    },
    "cancelled": {
        "en": "No problem, I've cancelled this request. Write any time to book again.",
        "es": "Sin problema, he cancelado la solicitud. Escríbeme cuando quieras reservar.",
        "ru": "Хорошо, я отменил запрос. Пишите, когда захотите записаться.",
    },
    "stale_option": {
        "en": "This option is no longer available ⏰\n\nPlease start over by typing your desired service and time.",
        "es": "Esta opción ya no está disponible ⏰\n\nPor favor, comienza de nuevo escribiendo el servicio y hora deseados.",
        "ru": "Этот вариант больше недоступен ⏰\n\nПожалуйста, начните заново, написав желаемую услугу и время.",
    },
    "slot_taken": {
        "en": "This time is no longer available. Here are nearby alternatives:",
        "es": "Este horario ya no está disponible. Aquí hay alternativas cercanas:",
        "ru": "Это время уже занято. Вот ближайшие альтернативы:",
    },
    "in_progress": {
        "en": "Got it, I'm working on your request ⏳",
        "es": "Entendido, estoy procesando tu solicitud ⏳",
        "ru": "Принято, обрабатываю ваш запрос ⏳",
    },
    "try_again": {
        "en": "An error occurred while processing your request 🙏\n\nPlease try again or contact the salon.",
        "es": "Se produjo un error al procesar tu solicitud 🙏\n\nPor favor, inténtalo de nuevo o contacta al salón.",
        "ru": "Произошла ошибка при обработке вашего запроса 🙏\n\nПожалуйста, попробуйте ещё раз или свяжитесь с салоном.",
    },
    "button_confirm": {
        "en": "✅ Confirm",
        "es": "✅ Confirmar",
        "ru": "✅ Подтвердить",
    },
    "button_cancel": {
        "en": "❌ Cancel",
        "es": "❌ Cancelar",
        "ru": "❌ Отменить",
    },
}


def render(key: str, language: Optional[str] = None, **values: str) -> str:
    """Render a template in the given language, falling back to English."""
    variants = TEMPLATES[key]
    template = variants.get(language or "en")
    if template is None:
        logger.debug(f"No '{language}' variant of '{key}', using English")
        template = variants["en"]
    return template.format(**values)


def format_day(candidate_day) -> str:
    """Short day label, e.g. "Tue 14 Oct"."""
    return candidate_day.strftime("%a %d %b")


def format_time(value) -> str:
    return value.strftime("%H:%M")


def slot_label(candidate: SlotCandidate, multi_day: bool = False) -> str:
    """Button title for an offered slot."""
    when = candidate.start_time.strftime("%a %H:%M" if multi_day else "%H:%M")
    label = f"{when} {candidate.staff_name}".strip()
    return label[:MAX_LABEL_LENGTH]
