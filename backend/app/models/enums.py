import enum


class MessageRole(str, enum.Enum):
    user = "user"
    bot = "bot"


class MessageStatus(str, enum.Enum):
    sending = "sending"
    sent = "sent"
    delivered = "delivered"
    read = "read"
    failed = "failed"


class OperationKind(str, enum.Enum):
    create_chat = "create_chat"
    send_message = "send_message"
    update_chat = "update_chat"
    delete_chat = "delete_chat"
