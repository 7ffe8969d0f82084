from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, List

from fleetauth.service.errors import PasswordPolicyViolationError

if TYPE_CHECKING:
    from fleetauth.config import Settings

SPECIAL_CHARACTERS = "@$!%*?&"


@dataclass(frozen=True)
class PasswordPolicy:
    """Configurable password strength rules.

    ``validate`` is pure and returns every violated rule so callers can show
    the user the full list at once.
    """

    min_length: int = 8
    max_length: int = 128
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_digit: bool = True
    require_special: bool = True
    special_characters: str = SPECIAL_CHARACTERS

    @classmethod
    def from_settings(cls, settings: "Settings") -> "PasswordPolicy":
        return cls(
            min_length=settings.password_min_length,
            max_length=settings.password_max_length,
            require_uppercase=settings.password_require_uppercase,
            require_lowercase=settings.password_require_lowercase,
            require_digit=settings.password_require_digit,
            require_special=settings.password_require_special,
        )

    def validate(self, password: str | None) -> List[str]:
        if not password:
            return ["Password is required"]

        violations: List[str] = []
        if len(password) < self.min_length:
            violations.append(f"Password must be at least {self.min_length} characters long")
        if len(password) > self.max_length:
            violations.append(f"Password must not exceed {self.max_length} characters")
        if self.require_uppercase and not any(c.isupper() for c in password):
            violations.append("Password must contain at least one uppercase letter")
        if self.require_lowercase and not any(c.islower() for c in password):
            violations.append("Password must contain at least one lowercase letter")
        if self.require_digit and not any(c.isdigit() for c in password):
            violations.append("Password must contain at least one digit")
        if self.require_special and not any(c in self.special_characters for c in password):
            violations.append(
                f"Password must contain at least one special character ({self.special_characters})"
            )
        return violations

    def is_valid(self, password: str | None) -> bool:
        return not self.validate(password)

    def ensure(self, password: str | None) -> None:
        violations = self.validate(password)
        if violations:
            raise PasswordPolicyViolationError(violations)

    def describe(self) -> str:
        parts = [f"between {self.min_length} and {self.max_length} characters"]
        if self.require_uppercase:
            parts.append("an uppercase letter")
        if self.require_lowercase:
            parts.append("a lowercase letter")
        if self.require_digit:
            parts.append("a digit")
        if self.require_special:
            parts.append(f"a special character ({self.special_characters})")
        return "Password must be " + parts[0] + (
            " and contain " + ", ".join(parts[1:]) if len(parts) > 1 else ""
        ) + "."
