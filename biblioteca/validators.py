import re
from typing import Any, Optional

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class AccountValidator:
    """Checks applied to registration and profile forms."""

    @staticmethod
    def validate_email(email: Optional[str]) -> bool:
        if not email:
            return False
        return bool(EMAIL_PATTERN.match(email.strip()))

    @staticmethod
    def validate_password(password: Optional[str], min_length: int = 6) -> bool:
        return password is not None and len(password) >= min_length


class ReferenceValidator:
    """Loan forms need a selected borrower and a selected book."""

    @staticmethod
    def is_present(value: Any) -> bool:
        if value is None:
            return False
        if isinstance(value, str):
            return bool(value.strip())
        return True
