from .enums import MessageRole, MessageStatus, OperationKind
from .folder import Folder
from .chat import Chat
from .message import Message
from .operation_receipt import OperationReceipt

__all__ = ["MessageRole", "MessageStatus", "OperationKind", "Folder", "Chat", "Message", "OperationReceipt"]
