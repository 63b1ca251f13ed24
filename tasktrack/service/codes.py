from __future__ import annotations

import hmac
import secrets
from datetime import datetime, timedelta
from typing import Optional, Tuple

CODE_DIGITS = 6


class SingleUseCodeIssuer:
    """Six-digit one-shot codes for email verification and password reset.

    Callers must clear a stored code after the first successful match.
    """

    def __init__(self, digits: int = CODE_DIGITS) -> None:
        self.digits = digits
        self._space = 10**digits

    def issue(self, now: datetime, ttl: timedelta) -> Tuple[str, datetime]:
        code = str(secrets.randbelow(self._space)).zfill(self.digits)
        return code, now + ttl

    def is_valid(
        self,
        stored_code: Optional[str],
        stored_expiry: Optional[datetime],
        supplied_code: str,
        now: datetime,
    ) -> bool:
        if not stored_code or stored_expiry is None:
            return False
        if not hmac.compare_digest(stored_code.encode(), supplied_code.encode()):
            return False
        return stored_expiry > now

    def looks_like_code(self, value: str) -> bool:
        return len(value) == self.digits and value.isascii() and value.isdigit()
