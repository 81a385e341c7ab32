"""Telegram channel adapter using python-telegram-bot v21+."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from telegram import ReplyParameters, Update
from telegram.constants import ChatAction, ParseMode
from telegram.ext import Application, ContextTypes, MessageHandler as TGMessageHandler, filters

from octo_bot.channels.base import ChannelAdapter, split_message
from octo_bot.channels.models import (
    Attachment,
    ChannelConfiguration,
    IncomingMessage,
    OutgoingMessage,
)
from octo_bot.core.types import ChannelStatus, MessageFormat
from octo_bot.log import get_logger

logger = get_logger(__name__)

TELEGRAM_MAX_LENGTH = 4096

_PARSE_MODES = {
    MessageFormat.PLAIN: None,
    MessageFormat.MARKDOWN: ParseMode.MARKDOWN_V2,
    MessageFormat.HTML: ParseMode.HTML,
}


class TelegramAdapter(ChannelAdapter):
    """Long-polling Telegram bot."""

    channel_type = "telegram"
    max_message_length = TELEGRAM_MAX_LENGTH

    def __init__(self, config: ChannelConfiguration):
        super().__init__(config)
        self._app: Application | None = None  # type: ignore[type-arg]

    def validate_configuration(self) -> list[str]:
        if not self.config.get("token"):
            return [f"Telegram bot token not configured for bot '{self.bot_id}'"]
        return []

    async def start(self) -> None:
        self.status = ChannelStatus.STARTING
        self._app = Application.builder().token(self.config.get("token")).build()

        self._app.add_handler(
            TGMessageHandler(
                filters.TEXT | filters.PHOTO | filters.Document.ALL, self._on_telegram_message
            )
        )
        self._app.add_error_handler(self._on_telegram_error)

        await self._app.initialize()
        await self._app.start()
        await self._app.updater.start_polling(drop_pending_updates=True)  # type: ignore[union-attr]
        self.status = ChannelStatus.CONNECTED
        logger.info("telegram_adapter_started", bot_id=self.bot_id)

    async def stop(self) -> None:
        if self._app:
            if self._app.updater and self._app.updater.running:
                await self._app.updater.stop()
            if self._app.running:
                await self._app.stop()
            await self._app.shutdown()
            self._app = None
            logger.info("telegram_adapter_stopped", bot_id=self.bot_id)
        self.status = ChannelStatus.STOPPED

    async def send(self, message: OutgoingMessage) -> None:
        if not self._app or not self._app.bot:
            raise RuntimeError("Telegram adapter is not running")

        chat_id = int(message.channel_id)
        reply = ReplyParameters(message_id=int(message.reply_to_id)) if message.reply_to_id else None

        images = [att for att in message.attachments if att.media_type.startswith("image/")]
        for att in images:
            await self._app.bot.send_photo(chat_id=chat_id, photo=att.data, reply_parameters=reply)
        for att in message.attachments:
            if att not in images:
                await self._app.bot.send_document(
                    chat_id=chat_id, document=att.data, filename=att.filename, reply_parameters=reply
                )

        if not message.content:
            return
        parse_mode = _PARSE_MODES.get(message.format)
        for chunk in split_message(message.content, self.max_message_length):
            await self._app.bot.send_message(
                chat_id=chat_id,
                text=chunk,
                parse_mode=parse_mode,
                reply_parameters=reply,
            )

    async def send_typing_indicator(self, channel_id: str) -> None:
        if self._app and self._app.bot:
            await self._app.bot.send_chat_action(chat_id=int(channel_id), action=ChatAction.TYPING)

    async def _on_telegram_error(self, update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
        error = context.error
        self.report_error(str(error) if error else "Unknown Telegram error", error)

    async def _on_telegram_message(self, update: Update, context: Any) -> None:
        if not update.message:
            return

        msg = update.message
        text = msg.text or msg.caption or ""
        attachments: list[Attachment] = []

        # Highest resolution is the last element
        if msg.photo:
            try:
                tg_file = await msg.photo[-1].get_file()
                data = await tg_file.download_as_bytearray()
                attachments.append(Attachment(data=bytes(data), media_type="image/jpeg", filename="photo.jpg"))
            except Exception as e:
                logger.warning("telegram_photo_download_error", error=str(e))
        if msg.document:
            try:
                tg_file = await msg.document.get_file()
                data = await tg_file.download_as_bytearray()
                attachments.append(
                    Attachment(
                        data=bytes(data),
                        media_type=msg.document.mime_type or "application/octet-stream",
                        filename=msg.document.file_name or "document",
                    )
                )
            except Exception as e:
                logger.warning("telegram_document_download_error", error=str(e))

        if not text and not attachments:
            return

        self.emit_message(
            IncomingMessage(
                channel_type=self.channel_type,
                channel_id=str(msg.chat_id),
                user_id=str(msg.from_user.id) if msg.from_user else "unknown",
                user_name=msg.from_user.full_name if msg.from_user else "Unknown",
                content=text,
                timestamp=msg.date or datetime.now(timezone.utc),
                reply_to_id=(
                    str(msg.reply_to_message.message_id) if msg.reply_to_message else None
                ),
                attachments=attachments,
            )
        )
