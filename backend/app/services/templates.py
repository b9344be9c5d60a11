from __future__ import annotations

import json
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Optional

from backend.app.errors import ConfigurationError
from backend.app.models import MessageType, OrderRow

DEFAULT_CUSTOMER_NAME = "عزيزي العميل"
DEFAULT_ORDER_ID = "غير محدد"
DEFAULT_AMOUNT = "N/A"
DEFAULT_PRODUCT_NAME = "المنتج المطلوب"
DEFAULT_ADDRESS = "العنوان المسجل"

DEFAULT_TEMPLATES: dict[MessageType, str] = {
    MessageType.new_order: (
        "السلام عليكم ورحمة الله مع حضرتك هبه✨\n"
        "طلبك ({productName}) في أيدٍ أمينة، وفريقنا بدأ في إعداده بكل شغف واهتمام. "
        "سنتواصل معك قريباً للتأكيد.\n"
        "شكراً لثقتك بنا !"
    ),
    MessageType.no_answer: (
        "السلام عليكم ورحمة الله وبركاته مع حضرتك هبه\n"
        "يبدو أننا لم نوفق في التواصل معك هاتفياً لتأكيد طلبك ({productName}). 😟\n"
        "حرصاً منا على عدم تأخيره، نرجو منك الرد علينا في أقرب فرصة. نحن في انتظارك!"
    ),
    MessageType.shipped: (
        "أخبار رائعة، لحضرتك 🎉\n"
        "طلبك ({productName}) انطلق في رحلته إليك الآن. استعد لاستقبال جرعة من السعادة قريباً! 🚚\n"
        "رقم التتبع: {trackingNumber}\n"
        "شكراً لصبرك وحماسك."
    ),
    MessageType.rejected_offer: (
        "السلام عليكم اخبار حضرتك ايه؟\n"
        "قد لا يكون طلبك الأخير قد اكتمل، لكننا لم ننسَ اهتمامك بنا. ❤️\n"
        "تقديراً لذلك، يسعدنا أن نهديك فرصة ثانية بتخفيض خاص 20% على ({productName}) "
        "بسعر {discountedAmount} جنيه بدلاً من {amount}."
    ),
    MessageType.reminder: (
        "السلام عليكم\n\n"
        "المحترم/ة {name}\n\n"
        "⏰ تذكير بطلبكم رقم {orderId}\n\n"
        "💰 المبلغ: {amount} جنيه (دفع عند الاستلام)\n\n"
        "📱 للتأكيد رد بكلمة \"أؤكد\" أو اتصل بنا على {supportPhone}\n\n"
        "فريق {companyName}"
    ),
}


def load_message_templates(path: Optional[str] = None) -> dict[MessageType, str]:
    templates = dict(DEFAULT_TEMPLATES)
    if not path:
        return templates
    file_path = Path(path)
    if not file_path.exists():
        raise ConfigurationError(f"message templates file not found: {path}")
    try:
        payload = json.loads(file_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"message templates file is not valid json: {path}") from exc
    overrides = payload.get("templates", payload) if isinstance(payload, dict) else None
    if not isinstance(overrides, dict):
        raise ConfigurationError("message templates file must contain an object")
    known = {item.value: item for item in DEFAULT_TEMPLATES}
    for key, value in overrides.items():
        if key in known and isinstance(value, str):
            templates[known[key]] = value
    return templates


def require_template(templates: dict[MessageType, str], message_type: MessageType) -> str:
    template = templates.get(message_type, "")
    if not template.strip():
        raise ConfigurationError(f"no message template configured for {message_type.value}")
    return template


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _format_amount(value: Decimal) -> str:
    normalized = value.normalize()
    if normalized == normalized.to_integral_value():
        return str(int(normalized))
    return format(normalized, "f")


def build_template_variables(
    row: OrderRow,
    *,
    phone: str,
    company_name: str,
    support_phone: str,
    tracking_base_url: str,
    now: Optional[datetime] = None,
) -> dict[str, str]:
    current = now or datetime.now()
    order_id = row.order_id.strip() or DEFAULT_ORDER_ID
    variables = {
        "name": row.name.strip() or DEFAULT_CUSTOMER_NAME,
        "phone": phone,
        "orderId": order_id,
        "amount": DEFAULT_AMOUNT,
        "discountedAmount": DEFAULT_AMOUNT,
        "savedAmount": DEFAULT_AMOUNT,
        "productName": (row.product_name or "").strip() or DEFAULT_PRODUCT_NAME,
        "companyName": company_name,
        "supportPhone": support_phone,
        "trackingNumber": f"TRK{order_id}",
        "trackingLink": f"{tracking_base_url.rstrip('/')}/{order_id}",
        "deliveryAddress": (row.address or "").strip() or DEFAULT_ADDRESS,
        "date": current.strftime("%Y-%m-%d"),
        "time": current.strftime("%H:%M"),
    }
    if row.total_price is not None:
        total = row.total_price
        variables["amount"] = _format_amount(total)
        variables["discountedAmount"] = str(_round_half_up(total * Decimal("0.8")))
        variables["savedAmount"] = str(_round_half_up(total * Decimal("0.2")))
    return variables


def render_message(template: str, variables: dict[str, str]) -> str:
    rendered = template
    for key, value in variables.items():
        rendered = rendered.replace("{" + key + "}", value)
    return rendered
