# /flowbot/models/events.py

from typing import Optional, Union, Dict, Any, Tuple
from pydantic import BaseModel, Field

from flowbot.models.flow import InputKind


class InboundEvent(BaseModel):
    """Common fields of everything the platform delivers to the bot."""
    user_id: int
    chat_id: int
    username: str = ""
    topic_id: int = Field(default=0, description="Forum topic / message thread id, 0 if none")
    message_id: int = Field(default=0, description="Id of the message that carried the event")


class CommandEvent(InboundEvent):
    command: str
    args: str = ""
    text: str = ""


class CallbackEvent(InboundEvent):
    callback_id: str
    data: str = ""


class MessageEvent(InboundEvent):
    kind: InputKind = InputKind.TEXT
    text: str = ""
    file_id: str = ""
    file_name: str = ""

    @property
    def value(self) -> str:
        """The input a flow step sees: the text, or the uploaded file's id."""
        return self.text if self.kind == InputKind.TEXT else self.file_id


Event = Union[CommandEvent, CallbackEvent, MessageEvent]


def parse_command(text: str) -> Tuple[str, str]:
    """Splits '/name@bot args' into ('name', 'args')."""
    parts = text.split(" ", 1)
    command = parts[0].removeprefix("/")
    if "@" in command:
        command = command[:command.index("@")]
    args = parts[1].strip() if len(parts) > 1 else ""
    return command, args


def event_from_update(update: Dict[str, Any]) -> Optional[Event]:
    """
    Converts a Telegram Bot API update into an inbound event.
    Returns None for update types the bot does not handle.
    """
    callback = update.get("callback_query")
    if callback:
        sender = callback.get("from") or {}
        message = callback.get("message") or {}
        return CallbackEvent(
            user_id=sender.get("id", 0),
            username=sender.get("username") or "",
            chat_id=(message.get("chat") or {}).get("id", sender.get("id", 0)),
            topic_id=message.get("message_thread_id") or 0,
            message_id=message.get("message_id") or 0,
            callback_id=callback.get("id", ""),
            data=callback.get("data") or "",
        )

    message = update.get("message")
    if not message or not message.get("from"):
        return None

    sender = message["from"]
    common = dict(
        user_id=sender.get("id", 0),
        username=sender.get("username") or "",
        chat_id=(message.get("chat") or {}).get("id", 0),
        topic_id=message.get("message_thread_id") or 0,
        message_id=message.get("message_id") or 0,
    )

    text = message.get("text") or ""
    if text.startswith("/"):
        command, args = parse_command(text)
        return CommandEvent(command=command, args=args, text=text, **common)

    if message.get("photo"):
        # Telegram lists sizes smallest first
        largest = message["photo"][-1]
        return MessageEvent(kind=InputKind.PHOTO, file_id=largest.get("file_id", ""),
                            text=message.get("caption") or "", **common)

    document = message.get("document")
    if document:
        return MessageEvent(kind=InputKind.DOCUMENT, file_id=document.get("file_id", ""),
                            file_name=document.get("file_name") or "",
                            text=message.get("caption") or "", **common)

    if "text" in message:
        return MessageEvent(kind=InputKind.TEXT, text=text, **common)

    return None
