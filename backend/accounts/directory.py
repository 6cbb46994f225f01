"""Account directory: resolves authenticated users to billable tenants."""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Optional, Union

from django.db import models

from .models import PrivateClinic, Therapist, User


class AccountKind(models.TextChoices):
    CLINIC = "CLINIC", "Clinic"
    THERAPIST = "THERAPIST", "Therapist"


Account = Union[PrivateClinic, Therapist]

_MODELS = {
    AccountKind.CLINIC: PrivateClinic,
    AccountKind.THERAPIST: Therapist,
}


class AccountNotFound(LookupError):
    """Raised when a user or reference does not map to a billable account."""


@dataclass(frozen=True)
class AccountRef:
    """Identifies one billable tenant; resolved once at the HTTP boundary."""

    kind: AccountKind
    id: uuid.UUID

    @classmethod
    def for_account(cls, account: Account) -> "AccountRef":
        if isinstance(account, PrivateClinic):
            return cls(AccountKind.CLINIC, account.pk)
        return cls(AccountKind.THERAPIST, account.pk)

    @property
    def model(self):
        return _MODELS[self.kind]

    @property
    def owner_field(self) -> str:
        return "clinic" if self.kind == AccountKind.CLINIC else "therapist"

    def owner_filter(self) -> dict:
        return {f"{self.owner_field}_id": self.id}

    def owner_kwargs(self) -> dict:
        """Keyword arguments assigning this owner on a new billing row."""
        return self.owner_filter()

    def __str__(self):
        return f"{self.kind}:{self.id}"


def resolve_account(user: User) -> AccountRef:
    """Map an authenticated user onto the tenant they act for."""
    if user is None or not getattr(user, "is_authenticated", False):
        raise AccountNotFound("Anonymous users do not own a billing account.")
    clinic = PrivateClinic.objects.filter(owner=user).only("id").first()
    therapist = Therapist.objects.filter(owner=user).only("id").first()
    if user.role == User.Role.CLINIC and clinic is not None:
        return AccountRef(AccountKind.CLINIC, clinic.pk)
    if user.role == User.Role.THERAPIST and therapist is not None:
        return AccountRef(AccountKind.THERAPIST, therapist.pk)
    # Role mismatch (e.g. admins who also own a practice): fall back to whatever they own.
    if clinic is not None:
        return AccountRef(AccountKind.CLINIC, clinic.pk)
    if therapist is not None:
        return AccountRef(AccountKind.THERAPIST, therapist.pk)
    raise AccountNotFound(f"User {user.pk} has no clinic or therapist profile.")


def get_account(ref: AccountRef) -> Account:
    try:
        return ref.model.objects.get(pk=ref.id)
    except ref.model.DoesNotExist as exc:
        raise AccountNotFound(f"Account {ref} does not exist.") from exc


def lock_account(ref: AccountRef) -> Account:
    """Row-lock the account; must be called inside ``transaction.atomic``."""
    try:
        return ref.model.objects.select_for_update().get(pk=ref.id)
    except ref.model.DoesNotExist as exc:
        raise AccountNotFound(f"Account {ref} does not exist.") from exc


def get_customer_reference(ref: AccountRef) -> Optional[str]:
    value = ref.model.objects.filter(pk=ref.id).values_list("stripe_customer_id", flat=True).first()
    return value or None


def set_selected_plan(ref: AccountRef, plan) -> None:
    ref.model.objects.filter(pk=ref.id).update(subscription_plan=plan)


__all__ = [
    "Account",
    "AccountKind",
    "AccountNotFound",
    "AccountRef",
    "get_account",
    "get_customer_reference",
    "lock_account",
    "resolve_account",
    "set_selected_plan",
]
