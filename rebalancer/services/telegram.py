from __future__ import annotations
import re
import httpx
import structlog

log = structlog.get_logger()

class TelegramClient:
    def __init__(self, bot_token: str, chat_id: str | int, timeout: float = 15.0):
        self.bot_token = bot_token
        self.chat_id = str(chat_id)
        self.base = f"https://api.telegram.org/bot{bot_token}"
        self.timeout = timeout

    def _sanitize_html(self, text_html: str) -> str:
        return re.sub(r"<br\s*/?>", "\n", text_html, flags=re.IGNORECASE)

    def _message_data(self, text_html: str, chat_id: str | int | None, disable_preview: bool) -> dict:
        return {
            "chat_id": str(chat_id) if chat_id is not None else self.chat_id,
            "text": self._sanitize_html(text_html),
            "parse_mode": "HTML",
            "disable_web_page_preview": disable_preview,
            "disable_notification": False,
        }

    def _document_parts(self, filename: str, content: bytes, caption_html: str | None, chat_id: str | int | None):
        data = {"chat_id": str(chat_id) if chat_id is not None else self.chat_id}
        if caption_html:
            data["caption"] = self._sanitize_html(caption_html)[:1024]
            data["parse_mode"] = "HTML"
        files = {"document": (filename, content, "text/html")}
        return data, files

    def _ok(self, r: httpx.Response, method: str) -> bool:
        if r.status_code != 200:
            log.warning("telegram_send_failed", method=method, status=r.status_code, body=r.text[:500])
            return False
        return True

    async def send_message_html(self, text_html: str, chat_id: str | int | None = None, disable_preview: bool = True):
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            r = await client.post(f"{self.base}/sendMessage", data=self._message_data(text_html, chat_id, disable_preview))
            return self._ok(r, "sendMessage")

    def send_message_html_sync(self, text_html: str, chat_id: str | int | None = None, disable_preview: bool = True):
        with httpx.Client(timeout=self.timeout) as client:
            r = client.post(f"{self.base}/sendMessage", data=self._message_data(text_html, chat_id, disable_preview))
            return self._ok(r, "sendMessage")

    def send_document_sync(self, filename: str, content: bytes, caption_html: str | None = None, chat_id: str | int | None = None):
        data, files = self._document_parts(filename, content, caption_html, chat_id)
        with httpx.Client(timeout=self.timeout) as client:
            r = client.post(f"{self.base}/sendDocument", data=data, files=files)
            return self._ok(r, "sendDocument")


def telegram_from_settings(settings) -> TelegramClient | None:
    if not (getattr(settings, "telegram_bot_token", None) and getattr(settings, "telegram_chat_id", None)):
        return None
    return TelegramClient(
        settings.telegram_bot_token,
        settings.telegram_chat_id,
        timeout=getattr(settings, "http_timeout_seconds", 15.0),
    )
