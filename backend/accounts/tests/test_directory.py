import uuid

import pytest
from django.contrib.auth.models import AnonymousUser

from accounts.directory import (
    AccountKind,
    AccountNotFound,
    AccountRef,
    get_account,
    get_customer_reference,
    resolve_account,
)
from accounts.models import PrivateClinic, Therapist, User


@pytest.fixture
def owner(django_user_model):
    def _owner(username, role):
        return django_user_model.objects.create_user(
            username=username,
            email=f"{username}@example.com",
            password="pass1234",
            role=role,
        )

    return _owner


@pytest.mark.django_db
def test_clinic_user_resolves_to_clinic(owner):
    user = owner("clinic", User.Role.CLINIC)
    clinic = PrivateClinic.objects.create(owner=user, email="clinic@practice.example.com", full_name="Clinic")

    ref = resolve_account(user)

    assert ref == AccountRef(AccountKind.CLINIC, clinic.pk)
    assert ref.owner_filter() == {"clinic_id": clinic.pk}
    assert get_account(ref) == clinic


@pytest.mark.django_db
def test_role_picks_matching_profile_when_user_owns_both(owner):
    user = owner("both", User.Role.THERAPIST)
    PrivateClinic.objects.create(owner=user, email="both-clinic@example.com", full_name="Clinic")
    therapist = Therapist.objects.create(owner=user, email="both-therapist@example.com", full_name="Therapist")

    ref = resolve_account(user)

    assert ref.kind == AccountKind.THERAPIST
    assert ref.id == therapist.pk
    assert ref.owner_kwargs() == {"therapist_id": therapist.pk}


@pytest.mark.django_db
def test_admin_falls_back_to_owned_profile(owner):
    user = owner("admin", User.Role.ADMIN)
    therapist = Therapist.objects.create(owner=user, email="admin-therapist@example.com", full_name="Therapist")

    assert resolve_account(user) == AccountRef(AccountKind.THERAPIST, therapist.pk)


@pytest.mark.django_db
def test_user_without_profile_has_no_account(owner):
    with pytest.raises(AccountNotFound):
        resolve_account(owner("lonely", User.Role.CLINIC))
    with pytest.raises(AccountNotFound):
        resolve_account(AnonymousUser())


@pytest.mark.django_db
def test_customer_reference_and_missing_accounts(owner):
    user = owner("ref", User.Role.CLINIC)
    clinic = PrivateClinic.objects.create(owner=user, email="ref@example.com", full_name="Ref", stripe_customer_id="")
    ref = AccountRef.for_account(clinic)

    assert get_customer_reference(ref) is None
    PrivateClinic.objects.filter(pk=clinic.pk).update(stripe_customer_id="cus_ref")
    assert get_customer_reference(ref) == "cus_ref"

    with pytest.raises(AccountNotFound):
        get_account(AccountRef(AccountKind.CLINIC, uuid.uuid4()))
