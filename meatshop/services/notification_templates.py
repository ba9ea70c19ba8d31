import re
from dataclasses import dataclass
from typing import Any

_PLACEHOLDER_RE = re.compile(r"{\s*([a-zA-Z0-9_]+)\s*}")

NOTIFICATION_TYPES = (
    "order_placed",
    "order_confirmed",
    "order_processing",
    "order_ready",
    "order_shipped",
    "order_delivered",
    "order_cancelled",
    "payment_received",
    "payment_failed",
    "refund_processed",
    "low_stock",
)


@dataclass(frozen=True)
class EmailTemplate:
    subject: str
    body: str


SMS_TEMPLATES: dict[str, dict[str, str]] = {
    "order_placed": {
        "en": "Order #{orderNumber} received! Total: {currency} {total}. We will prepare your fresh meat soon. Track: {trackingUrl}",
        "ar": "تم استلام الطلب #{orderNumber}! المجموع: {total} درهم. سنحضر لحومكم الطازجة قريباً. تتبع: {trackingUrl}",
    },
    "order_confirmed": {
        "en": "Your order #{orderNumber} is confirmed and being prepared. Estimated delivery: {estimatedTime}",
        "ar": "تم تأكيد طلبك #{orderNumber} وجاري تحضيره. وقت التسليم المتوقع: {estimatedTime}",
    },
    "order_processing": {
        "en": "Your order #{orderNumber} is now with our butchers.",
        "ar": "طلبك #{orderNumber} الآن لدى جزارينا.",
    },
    "order_ready": {
        "en": "Your order #{orderNumber} is packed and waiting for the driver.",
        "ar": "طلبك #{orderNumber} جاهز وبانتظار السائق.",
    },
    "order_shipped": {
        "en": "Your order #{orderNumber} is on its way! Driver: {driverName} {driverPhone}. Track: {trackingUrl}",
        "ar": "طلبك #{orderNumber} في الطريق إليك! السائق: {driverName} {driverPhone}. تتبع: {trackingUrl}",
    },
    "order_delivered": {
        "en": "Your order #{orderNumber} has been delivered. Enjoy your meal!",
        "ar": "تم تسليم طلبك #{orderNumber}. بالعافية!",
    },
    "order_cancelled": {
        "en": "Your order #{orderNumber} has been cancelled. Card payments are refunded within 3-5 business days.",
        "ar": "تم إلغاء طلبك #{orderNumber}. يتم استرداد مدفوعات البطاقة خلال 3-5 أيام عمل.",
    },
    "payment_received": {
        "en": "Payment of {currency} {amount} received for order #{orderNumber}. Thank you!",
        "ar": "تم استلام دفعة {amount} درهم للطلب #{orderNumber}. شكراً لكم!",
    },
    "payment_failed": {
        "en": "Payment failed for order #{orderNumber}. Please try again or use another payment method.",
        "ar": "فشل الدفع للطلب #{orderNumber}. يرجى المحاولة مرة أخرى أو استخدام طريقة دفع أخرى.",
    },
    "refund_processed": {
        "en": "Refund of {currency} {amount} processed for order #{orderNumber}. Allow 5-7 days to reflect.",
        "ar": "تم استرداد {amount} درهم للطلب #{orderNumber}. يظهر المبلغ خلال 5-7 أيام.",
    },
    "low_stock": {
        "en": "Low stock: {productName} has {quantity} left (threshold {threshold}). Please restock.",
        "ar": "مخزون منخفض: {productName} المتبقي {quantity} (الحد {threshold}). يرجى إعادة التوريد.",
    },
}

EMAIL_TEMPLATES: dict[str, dict[str, EmailTemplate]] = {
    "order_placed": {
        "en": EmailTemplate(
            subject="Order received - #{orderNumber}",
            body=(
                "Hi {customerName},\n\n"
                "Thank you for your order #{orderNumber}.\n\n"
                "{itemsSummary}\n\n"
                "Subtotal: {currency} {subtotal}\n"
                "Discount: {currency} {discount}\n"
                "VAT: {currency} {vat}\n"
                "Delivery: {currency} {deliveryFee}\n"
                "Total: {currency} {total}\n\n"
                "Delivering to: {deliveryAddress}\n"
                "Track your order: {trackingUrl}\n"
            ),
        ),
        "ar": EmailTemplate(
            subject="تم استلام الطلب - #{orderNumber}",
            body=(
                "مرحباً {customerName}،\n\n"
                "شكراً لطلبك #{orderNumber}.\n\n"
                "{itemsSummary}\n\n"
                "المجموع الفرعي: {subtotal} درهم\n"
                "الخصم: {discount} درهم\n"
                "ضريبة القيمة المضافة: {vat} درهم\n"
                "التوصيل: {deliveryFee} درهم\n"
                "الإجمالي: {total} درهم\n\n"
                "عنوان التوصيل: {deliveryAddress}\n"
                "تتبع طلبك: {trackingUrl}\n"
            ),
        ),
    },
    "order_confirmed": {
        "en": EmailTemplate(
            subject="Order #{orderNumber} confirmed",
            body="Your order #{orderNumber} is confirmed. Estimated delivery: {estimatedTime}.\n",
        ),
        "ar": EmailTemplate(
            subject="تم تأكيد الطلب #{orderNumber}",
            body="تم تأكيد طلبك #{orderNumber}. وقت التسليم المتوقع: {estimatedTime}.\n",
        ),
    },
    "order_shipped": {
        "en": EmailTemplate(
            subject="Order #{orderNumber} is on its way",
            body="Your order #{orderNumber} left our shop. Track it here: {trackingUrl}\n",
        ),
        "ar": EmailTemplate(
            subject="الطلب #{orderNumber} في الطريق إليك",
            body="غادر طلبك #{orderNumber} متجرنا. تتبعه هنا: {trackingUrl}\n",
        ),
    },
    "order_delivered": {
        "en": EmailTemplate(
            subject="Order #{orderNumber} delivered",
            body="Your order #{orderNumber} has been delivered. Enjoy your meal!\n",
        ),
        "ar": EmailTemplate(
            subject="تم تسليم الطلب #{orderNumber}",
            body="تم تسليم طلبك #{orderNumber}. بالعافية!\n",
        ),
    },
    "order_cancelled": {
        "en": EmailTemplate(
            subject="Order #{orderNumber} cancelled",
            body=(
                "Your order #{orderNumber} has been cancelled.\n"
                "If you paid by card, the refund is processed within 3-5 business days.\n"
            ),
        ),
        "ar": EmailTemplate(
            subject="تم إلغاء الطلب #{orderNumber}",
            body="تم إلغاء طلبك #{orderNumber}.\nإذا دفعت بالبطاقة، يتم الاسترداد خلال 3-5 أيام عمل.\n",
        ),
    },
    "payment_received": {
        "en": EmailTemplate(
            subject="Payment received - order #{orderNumber}",
            body="We received your payment of {currency} {amount} for order #{orderNumber}.\n",
        ),
        "ar": EmailTemplate(
            subject="تم استلام الدفعة - الطلب #{orderNumber}",
            body="تم استلام دفعتك بقيمة {amount} درهم للطلب #{orderNumber}.\n",
        ),
    },
    "payment_failed": {
        "en": EmailTemplate(
            subject="Payment failed - order #{orderNumber}",
            body="The payment for order #{orderNumber} failed: {reason}\nPlease try again with another card.\n",
        ),
        "ar": EmailTemplate(
            subject="فشل الدفع - الطلب #{orderNumber}",
            body="فشل الدفع للطلب #{orderNumber}: {reason}\nيرجى المحاولة ببطاقة أخرى.\n",
        ),
    },
    "refund_processed": {
        "en": EmailTemplate(
            subject="Refund processed - order #{orderNumber}",
            body="A refund of {currency} {amount} was processed for order #{orderNumber}.\n",
        ),
        "ar": EmailTemplate(
            subject="تم معالجة الاسترداد - الطلب #{orderNumber}",
            body="تم استرداد {amount} درهم للطلب #{orderNumber}.\n",
        ),
    },
    "low_stock": {
        "en": EmailTemplate(
            subject="Low stock alert - {productName}",
            body=(
                "{productName} is running low.\n"
                "Current quantity: {quantity}\n"
                "Threshold: {threshold}\n"
            ),
        ),
        "ar": EmailTemplate(
            subject="تنبيه انخفاض المخزون - {productName}",
            body="{productName} منخفض المخزون.\nالكمية الحالية: {quantity}\nالحد الأدنى: {threshold}\n",
        ),
    },
}


def render_template(template: str, context: dict[str, Any]) -> str:
    def _replace(match: re.Match[str]) -> str:
        value = context.get(match.group(1))
        return "" if value is None else str(value)

    return _PLACEHOLDER_RE.sub(_replace, template)


def _language(language: str | None) -> str:
    return "ar" if (language or "").lower() == "ar" else "en"


def render_sms(notification_type: str, language: str | None, context: dict[str, Any]) -> str | None:
    templates = SMS_TEMPLATES.get(notification_type)
    if not templates:
        return None
    return render_template(templates[_language(language)], context).strip()


def render_email(notification_type: str, language: str | None, context: dict[str, Any]) -> EmailTemplate | None:
    templates = EMAIL_TEMPLATES.get(notification_type)
    if not templates:
        return None
    template = templates[_language(language)]
    return EmailTemplate(
        subject=render_template(template.subject, context).strip(),
        body=render_template(template.body, context),
    )
