from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Protocol, Sequence

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from app.core.config import settings
from app.core.exceptions import GenerationError
from app.core.logging import get_logger
from app.models.enums import MessageRole

logger = get_logger(__name__)


@dataclass(frozen=True)
class ChatTurn:
    """One prior message as context for generation"""
    role: str
    content: str


class GenerationProvider(Protocol):
    """Produces a bot reply as a stream of text fragments"""

    def stream(self, history: Sequence[ChatTurn], prompt: str) -> AsyncIterator[str]:
        ...


class LangChainGenerationProvider:
    def __init__(self, model: Optional[ChatOpenAI] = None, context_messages: Optional[int] = None):
        self._model = model
        self.context_messages = context_messages or settings.generation_context_messages

    @property
    def model(self) -> ChatOpenAI:
        if self._model is None:
            config = settings.get_openai_config()
            if not config["api_key"]:
                raise GenerationError("Generation provider is not configured")
            self._model = ChatOpenAI(
                model=config["model"],
                temperature=config["temperature"],
                openai_api_key=config["api_key"],
                max_tokens=config["max_tokens"],
                timeout=config["timeout"],
            )
        return self._model

    def build_messages(self, history: Sequence[ChatTurn], prompt: str) -> List[BaseMessage]:
        """System prompt, the recent conversation, then the new user message"""
        messages: List[BaseMessage] = [SystemMessage(content=self._get_system_prompt())]

        recent_history = list(history)[-self.context_messages:]
        for msg in recent_history:
            if msg.role == MessageRole.user.value:
                messages.append(HumanMessage(content=msg.content))
            elif msg.role == MessageRole.bot.value:
                messages.append(AIMessage(content=msg.content))

        # The triggering message is usually already the tail of the history
        if not recent_history or recent_history[-1].content != prompt:
            messages.append(HumanMessage(content=prompt))
        return messages

    async def stream(self, history: Sequence[ChatTurn], prompt: str) -> AsyncIterator[str]:
        messages = self.build_messages(history, prompt)
        try:
            async for chunk in self.model.astream(messages):
                if chunk.content:
                    yield chunk.content
        except GenerationError:
            raise
        except Exception as e:
            logger.error("Generation provider failed", error=str(e))
            raise GenerationError("Generation provider failed", details={"error": str(e)}) from e

    def _get_system_prompt(self) -> str:
        return """You are SpeechBot, a helpful and friendly AI assistant.

Guidelines:
- Provide clear, accurate, and helpful responses
- Be conversational but professional
- Remember context from the conversation history
- Be concise unless detailed explanations are requested
- Use markdown for readability when appropriate"""
