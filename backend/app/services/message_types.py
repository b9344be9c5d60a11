from __future__ import annotations

from typing import Optional

from backend.app.models import MessageType

EMPTY_STATUS_LABEL = "غير محدد"

STATUS_ALIASES: dict[MessageType, frozenset[str]] = {
    MessageType.new_order: frozenset(
        {"", "جديد", "طلب جديد", "قيد المراجعة", "قيد المراجعه", EMPTY_STATUS_LABEL}
    ),
    MessageType.no_answer: frozenset({"لم يتم الرد", "لم يرد", "لا يرد", "عدم الرد"}),
    MessageType.shipped: frozenset(
        {"تم التأكيد", "تم التاكيد", "مؤكد", "تم الشحن", "قيد الشحن"}
    ),
    MessageType.rejected_offer: frozenset(
        {"تم الرفض", "مرفوض", "رفض الاستلام", "رفض الأستلام", "لم يتم الاستلام"}
    ),
}

# Final states: no notification, not an error.
TERMINAL_STATUSES = frozenset(
    {"تم التوصيل", "تم التوصيل بنجاح", "delivered", "ملغي", "تم الإلغاء", "cancelled"}
)

_LOOKUP: dict[str, MessageType] = {
    alias: message_type for message_type, aliases in STATUS_ALIASES.items() for alias in aliases
}


def normalize_status(status: Optional[str]) -> str:
    return (status or "").strip()


def resolve_message_type(status: Optional[str]) -> MessageType:
    return _LOOKUP.get(normalize_status(status), MessageType.unknown)


def is_terminal_status(status: Optional[str]) -> bool:
    return normalize_status(status) in TERMINAL_STATUSES


def status_label(status: Optional[str]) -> str:
    return normalize_status(status) or EMPTY_STATUS_LABEL
