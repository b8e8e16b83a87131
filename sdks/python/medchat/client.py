"""MedChat Python SDK Client"""

import httpx
from typing import Optional, List, Dict, Any, AsyncIterator
import json


class RateLimitedError(Exception):
    """Raised when the service answers 429"""

    def __init__(self, retry_after: int, detail: str = ""):
        self.retry_after = retry_after
        super().__init__(detail or f"Rate limited, retry after {retry_after}s")


class MedChatClient:
    """Python SDK for the MedChat session service"""

    def __init__(
        self,
        user_id: str,
        base_url: str = "http://localhost:8000",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.user_id = user_id
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "X-User-Id": user_id,
                "Content-Type": "application/json",
            },
            timeout=120.0,
            transport=transport,
        )

    @staticmethod
    def _raise_for_status(response: httpx.Response):
        if response.status_code == 429:
            retry_after = int(response.headers.get("Retry-After", "0") or 0)
            raise RateLimitedError(retry_after, response.text)
        response.raise_for_status()

    async def send_message(
        self,
        chat_id: str,
        content: str,
        attachments: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        """
        Send one message and wait for the full reply

        Args:
            chat_id: Conversation id (created on first message)
            content: Message text
            attachments: Optional image attachments
                ({"type": "image", "data": <base64>, "mimeType": ...})

        Returns:
            Turn result with state, reply and transcript
        """
        payload: Dict[str, Any] = {"content": content}
        if attachments:
            payload["attachments"] = attachments

        response = await self.client.post(f"/v1/chats/{chat_id}/messages", json=payload)
        self._raise_for_status(response)
        return response.json()

    async def stream_message(
        self,
        chat_id: str,
        content: str,
        attachments: Optional[List[Dict[str, Any]]] = None,
    ) -> AsyncIterator[str]:
        """
        Send one message and stream the reply

        Yields content chunks
        """
        payload: Dict[str, Any] = {"content": content, "stream": True}
        if attachments:
            payload["attachments"] = attachments

        async with self.client.stream(
            "POST",
            f"/v1/chats/{chat_id}/messages",
            json=payload,
        ) as response:
            if response.status_code == 429:
                await response.aread()
            self._raise_for_status(response)
            async for line in response.aiter_lines():
                if line.startswith("data: "):
                    data = line[6:]
                    if data == "[DONE]":
                        break
                    try:
                        chunk = json.loads(data)
                        if "choices" in chunk and chunk["choices"]:
                            content = chunk["choices"][0].get("delta", {}).get("content", "")
                            if content:
                                yield content
                    except json.JSONDecodeError:
                        continue

    async def list_chats(self) -> List[Dict[str, Any]]:
        """List the user's chats"""
        response = await self.client.get("/v1/chats")
        self._raise_for_status(response)
        return response.json()

    async def get_chat(self, chat_id: str) -> Dict[str, Any]:
        """Get one chat with its transcript"""
        response = await self.client.get(f"/v1/chats/{chat_id}")
        self._raise_for_status(response)
        return response.json()

    async def delete_chat(self, chat_id: str) -> None:
        """Delete one chat"""
        response = await self.client.delete(f"/v1/chats/{chat_id}")
        self._raise_for_status(response)

    async def rate_limit_info(self) -> Dict[str, Any]:
        """Current rate-limit window for this client"""
        response = await self.client.get("/v1/rate-limit")
        self._raise_for_status(response)
        return response.json()

    async def close(self):
        """Close the client"""
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
