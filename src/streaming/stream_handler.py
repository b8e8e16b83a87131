"""Model streaming"""

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence
import litellm

from src.errors import ProducerError
from src.models.conversation import Message

logger = logging.getLogger(__name__)


class ModelProducer(Protocol):
    """Anything that turns a history and a system prompt into text deltas"""

    def stream_deltas(
        self,
        messages: Sequence[Message],
        system_prompt: str,
    ) -> AsyncIterator[str]: ...


def to_llm_message(message: Message) -> Dict[str, Any]:
    """Chat-completion message; image attachments become image_url parts"""
    if not message.attachments:
        return {"role": message.role, "content": message.content}

    parts: List[Dict[str, Any]] = []
    if message.content:
        parts.append({"type": "text", "text": message.content})
    for attachment in message.attachments:
        mime_type = attachment.mime_type or "image/jpeg"
        parts.append({
            "type": "image_url",
            "image_url": {"url": f"data:{mime_type};base64,{attachment.data}"},
        })
    return {"role": message.role, "content": parts}


class StreamHandler:
    """Stream completions through LiteLLM"""

    def __init__(self, model: str, temperature: float = 0.7, **kwargs):
        self.model = model
        self.temperature = temperature
        self.extra_params = kwargs

    async def stream_deltas(
        self,
        messages: Sequence[Message],
        system_prompt: str,
    ) -> AsyncIterator[str]:
        """
        Stream LLM completion

        Yields text deltas in emission order. Any provider failure is
        raised as ProducerError.
        """
        llm_messages = [{"role": "system", "content": system_prompt}]
        llm_messages.extend(to_llm_message(m) for m in messages if m.role != "system")

        try:
            response = await litellm.acompletion(
                model=self.model,
                messages=llm_messages,
                temperature=self.temperature,
                stream=True,
                **self.extra_params,
            )
            async for chunk in response:
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if content:
                    yield content
        except ProducerError:
            raise
        except Exception as e:
            logger.debug("Model stream failed for %s", self.model, exc_info=True)
            raise ProducerError(f"{self.model}: {e}") from e

    @staticmethod
    def format_chunk(content: Optional[str], chunk_id: str = "", finish_reason: Optional[str] = None) -> str:
        """Format one SSE chunk in chat-completion-chunk shape"""
        data = {
            "id": chunk_id,
            "object": "chat.completion.chunk",
            "choices": [{
                "delta": {"content": content} if content is not None else {},
                "index": 0,
                "finish_reason": finish_reason,
            }],
        }
        return f"data: {json.dumps(data)}\n\n"

    @staticmethod
    def format_event(payload: Dict[str, Any]) -> str:
        return f"data: {json.dumps(payload)}\n\n"

    @staticmethod
    def done() -> str:
        return "data: [DONE]\n\n"
