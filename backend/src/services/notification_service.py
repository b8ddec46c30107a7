# pyright: reportMissingTypeStubs=false
"""
Outbound notifications to agents and administrators.

Notifications are best effort: a failed send is logged and reported as False,
never raised, so no payout or settlement state depends on delivery.
"""

import logging
from typing import Optional, Protocol

import httpx

from core.config import TELEGRAM_BOT_TOKEN
from models import PayoutMethod
from utils.money import format_rubles

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"


class NotificationSink(Protocol):
    """Fire-and-forget message delivery."""

    def notify(self, agent_external_id: Optional[str], message: str) -> bool:
        ...


class NullNotificationSink:
    """Sink used when no transport is configured; logs and drops messages."""

    def notify(self, agent_external_id: Optional[str], message: str) -> bool:
        logger.debug(f"Notification to {agent_external_id} dropped (no transport configured)")
        return False


class TelegramNotificationSink:
    """Sends HTML messages through the Telegram Bot API."""

    def __init__(
        self,
        bot_token: str = TELEGRAM_BOT_TOKEN,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        if not bot_token:
            raise ValueError("bot_token is required")
        self._http = httpx.Client(
            base_url=f"{TELEGRAM_API_URL}/bot{bot_token}",
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def notify(self, agent_external_id: Optional[str], message: str) -> bool:
        if not agent_external_id:
            logger.info("Recipient has no chat id, skipping notification")
            return False
        try:
            response = self._http.post(
                "/sendMessage",
                json={"chat_id": agent_external_id, "text": message, "parse_mode": "HTML"},
            )
            response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.error(f"Failed to send notification to {agent_external_id}: {e}")
            return False


def build_notification_sink(bot_token: str = TELEGRAM_BOT_TOKEN) -> NotificationSink:
    if bot_token:
        return TelegramNotificationSink(bot_token)
    logger.warning("TELEGRAM_BOT_TOKEN not set, notifications disabled")
    return NullNotificationSink()


# --- Message texts (agents see coarse status only, never provider error detail) ---

_METHOD_TEXT = {
    PayoutMethod.CARD: "на карту",
    PayoutMethod.SBP: "по СБП",
    PayoutMethod.BANK_ACCOUNT: "на счёт",
}


def payout_sent_message(amount: int, method: PayoutMethod) -> str:
    return (
        f"💳 <b>Выплата отправлена {_METHOD_TEXT[method]}</b>\n\n"
        f"Сумма: {format_rubles(amount)}\n"
        "Статус: Обрабатывается\n\n"
        "Вы получите уведомление, когда деньги поступят."
    )


def payout_paid_message(amount: int) -> str:
    return f"✅ <b>Выплата {format_rubles(amount)} зачислена!</b>\n\nДеньги поступили на ваш счёт."


def payout_rejected_message(amount: int) -> str:
    return (
        f"❌ <b>Выплата {format_rubles(amount)} отклонена</b>\n\n"
        "Проверьте ваши реквизиты и обратитесь в поддержку."
    )


def signature_required_message() -> str:
    return "📝 <b>Подпишите документы</b>\n\nДля завершения выплаты необходимо подписать акт."


def admin_payout_error_message(agent_name: str, amount: int, provider_payment_id: Optional[str]) -> str:
    return (
        "⚠️ <b>Ошибка выплаты</b>\n\n"
        f"Агент: {agent_name}\n"
        f"Сумма: {format_rubles(amount)}\n"
        f"ID у провайдера: {provider_payment_id or '-'}"
    )
