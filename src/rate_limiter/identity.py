"""Client identity resolution"""

from typing import Mapping, Optional

UNKNOWN_CLIENT = "unknown"


def client_identity(headers: Mapping[str, str]) -> str:
    """
    Resolve the client id from proxy headers

    First entry of x-forwarded-for, else x-real-ip, trimmed. Falls back
    to "unknown" when neither header is present.
    """
    forwarded_for: Optional[str] = headers.get("x-forwarded-for")
    real_ip: Optional[str] = headers.get("x-real-ip")

    if forwarded_for:
        candidate = forwarded_for.split(",")[0]
    elif real_ip:
        candidate = real_ip
    else:
        return UNKNOWN_CLIENT

    return candidate.strip() or UNKNOWN_CLIENT
