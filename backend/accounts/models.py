import uuid

from django.contrib.auth.models import AbstractUser
from django.db import models


class User(AbstractUser):
    """
    User model
    """

    class Role(models.TextChoices):
        ADMIN = "ADMIN", "Administrator"
        CLINIC = "CLINIC", "Private clinic"
        THERAPIST = "THERAPIST", "Individual therapist"

    email = models.EmailField(unique=True)
    role = models.CharField(
        max_length=20,
        choices=Role.choices,
        default=Role.THERAPIST,
        help_text="Kind of tenant this login acts for",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    USERNAME_FIELD = 'username'
    REQUIRED_FIELDS = ['email']

    class Meta:
        db_table = 'user'
        verbose_name = 'User'
        verbose_name_plural = 'Users'

    def __str__(self):
        return self.username


class BillableAccount(models.Model):
    """Fields shared by every tenant that can hold a subscription."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    email = models.EmailField(unique=True)
    full_name = models.CharField(max_length=255)
    stripe_customer_id = models.CharField(
        max_length=255,
        unique=True,
        blank=True,
        null=True,
        help_text="Payment provider customer identifier",
    )
    subscription_plan = models.ForeignKey(
        "billing.SubscriptionPlan",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
        help_text="Plan most recently purchased or switched to",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True

    def __str__(self):
        return self.full_name or self.email


class PrivateClinic(BillableAccount):
    owner = models.OneToOneField(
        User,
        on_delete=models.CASCADE,
        related_name="clinic",
    )

    class Meta:
        db_table = "accounts_private_clinic"
        verbose_name = "Private clinic"
        verbose_name_plural = "Private clinics"
        ordering = ["-created_at"]


class Therapist(BillableAccount):
    owner = models.OneToOneField(
        User,
        on_delete=models.CASCADE,
        related_name="therapist",
    )

    class Meta:
        db_table = "accounts_therapist"
        verbose_name = "Therapist"
        verbose_name_plural = "Therapists"
        ordering = ["-created_at"]
