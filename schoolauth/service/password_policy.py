from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import Any, List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from schoolauth.logging import get_logger
from schoolauth.service.errors import BadRequestError, NotFoundError
from schoolauth.service.permissions import parse_role
from schoolauth.storage.errors import ConstraintViolation
from schoolauth.storage.models import PasswordPolicy, User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
MAX_PASSWORD_HISTORY = 5
HISTORY_REUSE_MESSAGE = (
    "Password has been used recently. Please choose a different password"
)
MIN_POLICY_LENGTH = 6
DUPLICATE_POLICY_MESSAGE = "A password policy with this name already exists"

COMMON_PASSWORDS = frozenset(
    {
        "password",
        "123456",
        "123456789",
        "qwerty",
        "abc123",
        "password123",
        "admin",
        "letmein",
        "welcome",
        "monkey",
        "1234567890",
        "password1",
        "qwerty123",
        "welcome123",
    }
)

_SEQUENTIAL_RE = re.compile(
    "(?:"
    + "|".join(
        ["012", "123", "234", "345", "456", "567", "678", "789", "890"]
        + ["abcdefghijklmnopqrstuvwxyz"[i : i + 3] for i in range(24)]
    )
    + ")",
    re.IGNORECASE,
)
_SPECIAL_RE = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")

_hasher = PasswordHasher(type=Type.ID)

# Used when no stored policy applies to the user's role
DEFAULT_POLICY = PasswordPolicy(id="default", name="default")


@dataclass
class ValidationResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)

    def message(self) -> str:
        return ", ".join(self.errors)


@dataclass
class HistoryResult:
    is_valid: bool
    error: Optional[str] = None


def hash_password(password: str) -> Tuple[str, str]:
    return _hasher.hash(password), PASSWORD_ALGO


def verify_password_hash(stored_hash: str, password: str) -> bool:
    try:
        return _hasher.verify(stored_hash, password)
    except (InvalidHash, VerifyMismatchError, VerificationError):
        return False


def _personal_info(user: Optional[User]) -> list[str]:
    if user is None:
        return []
    values = [
        user.username,
        user.email.split("@")[0] if user.email else None,
        user.first_name,
        user.last_name,
        user.phone,
    ]
    return [v.lower() for v in values if v]


def validate_password(
    password: str,
    user: Optional[User] = None,
    policy: Optional[PasswordPolicy] = None,
) -> ValidationResult:
    """Check ``password`` against ``policy`` (the built-in default when None).

    Never raises for a weak password; the returned errors are meant to be
    shown to the user verbatim.
    """
    policy = policy or DEFAULT_POLICY
    errors: List[str] = []

    if len(password) < policy.min_length:
        errors.append(f"Password must be at least {policy.min_length} characters long")
    if policy.max_length and len(password) > policy.max_length:
        errors.append(f"Password cannot exceed {policy.max_length} characters")

    if policy.require_uppercase and not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if policy.require_lowercase and not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if policy.require_numbers and not re.search(r"\d", password):
        errors.append("Password must contain at least one number")
    if policy.require_special_chars and not _SPECIAL_RE.search(password):
        errors.append("Password must contain at least one special character")

    if policy.prevent_common_passwords and password.lower() in COMMON_PASSWORDS:
        errors.append("Password is too common. Please choose a stronger password")

    if policy.prevent_sequential_chars and _SEQUENTIAL_RE.search(password):
        errors.append("Password cannot contain sequential characters")

    if policy.prevent_repeated_chars:
        repeated = re.compile(r"(.)\1{%d,}" % policy.max_repeated_chars)
        if repeated.search(password):
            errors.append(
                f"Password cannot contain more than {policy.max_repeated_chars} repeated characters"
            )

    if policy.prevent_personal_info:
        lowered = password.lower()
        if any(info in lowered for info in _personal_info(user)):
            errors.append("Password cannot contain personal information")

    return ValidationResult(is_valid=not errors, errors=errors)


def check_password_history(history: List[str], candidate: str) -> HistoryResult:
    """Reject ``candidate`` when it matches any stored previous hash."""
    for old_hash in history:
        if verify_password_hash(old_hash, candidate):
            return HistoryResult(is_valid=False, error=HISTORY_REUSE_MESSAGE)
    return HistoryResult(is_valid=True)


def push_password_history(history: List[str], previous_hash: Optional[str]) -> List[str]:
    """Most-recent-first history with ``previous_hash`` prepended, capped at five."""
    if not previous_hash:
        return list(history)[:MAX_PASSWORD_HISTORY]
    return ([previous_hash] + list(history))[:MAX_PASSWORD_HISTORY]


class PolicyStore(Protocol):
    def create_password_policy(self, name: str, **fields: Any) -> PasswordPolicy: ...

    def get_password_policy(self, policy_id: str) -> Optional[PasswordPolicy]: ...

    def update_password_policy(self, policy_id: str, **fields: Any) -> Optional[PasswordPolicy]: ...

    def list_password_policies(self, *, active_only: bool = False) -> List[PasswordPolicy]: ...


def check_policy_rules(policy: PasswordPolicy) -> None:
    """Raise ``BadRequestError`` for rule values no password could sensibly meet."""
    if policy.min_length < MIN_POLICY_LENGTH:
        raise BadRequestError(f"minLength must be at least {MIN_POLICY_LENGTH}")
    if policy.max_length < policy.min_length:
        raise BadRequestError("maxLength cannot be less than minLength")
    if policy.max_repeated_chars < 1:
        raise BadRequestError("maxRepeatedChars must be at least 1")
    if policy.password_history < 0 or policy.expiry_days < 0:
        raise BadRequestError("passwordHistory and expiryDays cannot be negative")
    for role in policy.applicable_roles:
        if parse_role(role) is None:
            raise BadRequestError(f"Invalid role: {role}")


class PasswordPolicyService:
    """Admin-managed policies and per-role resolution."""

    def __init__(self, store: PolicyStore) -> None:
        self.store = store

    def create_policy(self, name: str, *, created_by: Optional[str] = None, **rules: Any) -> PasswordPolicy:
        check_policy_rules(PasswordPolicy(id="candidate", name=name, **rules))
        try:
            policy = self.store.create_password_policy(name, created_by=created_by, **rules)
        except ConstraintViolation:
            raise BadRequestError(DUPLICATE_POLICY_MESSAGE)
        logger.info("password_policy_created", policy_id=policy.id, name=name)
        return policy

    def update_policy(self, policy_id: str, **changes: Any) -> PasswordPolicy:
        current = self.store.get_password_policy(policy_id)
        if not current:
            raise NotFoundError("Password policy not found")
        check_policy_rules(replace(current, **changes))
        try:
            policy = self.store.update_password_policy(policy_id, **changes)
        except ConstraintViolation:
            raise BadRequestError(DUPLICATE_POLICY_MESSAGE)
        if not policy:
            raise NotFoundError("Password policy not found")
        logger.info("password_policy_updated", policy_id=policy_id, fields=sorted(changes))
        return policy

    def list_policies(self, *, active_only: bool = False) -> List[PasswordPolicy]:
        return self.store.list_password_policies(active_only=active_only)

    def get_applicable_policy(self, role: Optional[str]) -> PasswordPolicy:
        for policy in self.store.list_password_policies(active_only=True):
            if policy.applies_to(role):
                return policy
        return DEFAULT_POLICY

    def validate_for_user(self, password: str, user: Optional[User], role: Optional[str] = None) -> ValidationResult:
        policy = self.get_applicable_policy(role or (user.role if user else None))
        return validate_password(password, user, policy)

    def check_candidate(
        self, password: str, user: Optional[User]
    ) -> Tuple[ValidationResult, PasswordPolicy]:
        """Policy check plus, for a known user, the reuse check against history.

        Without a user the student policy applies, since that is the role a
        self-service signup receives.
        """
        policy = self.get_applicable_policy(user.role if user else "student")
        result = validate_password(password, user, policy)
        if user is not None:
            history = check_password_history(user.password_history, password)
            if not history.is_valid:
                result.errors.append(history.error)
                result.is_valid = False
        return result, policy


__all__ = [
    "COMMON_PASSWORDS",
    "DEFAULT_POLICY",
    "HISTORY_REUSE_MESSAGE",
    "MAX_PASSWORD_HISTORY",
    "PASSWORD_ALGO",
    "HistoryResult",
    "PasswordPolicyService",
    "ValidationResult",
    "check_password_history",
    "check_policy_rules",
    "hash_password",
    "push_password_history",
    "validate_password",
    "verify_password_hash",
]
