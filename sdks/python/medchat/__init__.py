"""MedChat Python SDK"""

from medchat.client import MedChatClient, RateLimitedError

__all__ = ["MedChatClient", "RateLimitedError"]
