"""URL routes for billing endpoints."""
from django.urls import path

from .views.payment_methods import (
    DefaultPaymentMethodView,
    PaymentMethodDetailView,
    PaymentMethodListView,
    SetDefaultPaymentMethodView,
)
from .views.payments import PaymentDetailView, PaymentListView
from .views.plans import (
    AdminPlanDetailView,
    AdminPlanListView,
    AdminPlanRestoreView,
    PlanDetailView,
    PlanListView,
)
from .views.subscriptions import (
    CancelSubscriptionView,
    CurrentSubscriptionView,
    PreviewUpgradeView,
    PurchaseSubscriptionView,
    ReactivateSubscriptionView,
    SubscriptionListView,
    SubscriptionStatusView,
    UpgradeSubscriptionView,
)
from .views.webhooks import ProviderWebhookView

app_name = "billing"

urlpatterns = [
    path("plans/", PlanListView.as_view(), name="plan-list"),
    path("plans/<uuid:plan_id>/", PlanDetailView.as_view(), name="plan-detail"),
    path("admin/plans/", AdminPlanListView.as_view(), name="admin-plan-list"),
    path("admin/plans/<uuid:plan_id>/", AdminPlanDetailView.as_view(), name="admin-plan-detail"),
    path("admin/plans/<uuid:plan_id>/restore/", AdminPlanRestoreView.as_view(), name="admin-plan-restore"),
    path("payment-methods/", PaymentMethodListView.as_view(), name="payment-method-list"),
    path("payment-methods/default/", DefaultPaymentMethodView.as_view(), name="payment-method-default"),
    path(
        "payment-methods/<uuid:payment_method_id>/",
        PaymentMethodDetailView.as_view(),
        name="payment-method-detail",
    ),
    path(
        "payment-methods/<uuid:payment_method_id>/default/",
        SetDefaultPaymentMethodView.as_view(),
        name="payment-method-set-default",
    ),
    path("subscriptions/", SubscriptionListView.as_view(), name="subscription-list"),
    path("subscriptions/purchase/", PurchaseSubscriptionView.as_view(), name="subscription-purchase"),
    path("subscriptions/current/", CurrentSubscriptionView.as_view(), name="subscription-current"),
    path("subscriptions/status/", SubscriptionStatusView.as_view(), name="subscription-status"),
    path("subscriptions/preview-upgrade/", PreviewUpgradeView.as_view(), name="subscription-preview-upgrade"),
    path("subscriptions/upgrade/", UpgradeSubscriptionView.as_view(), name="subscription-upgrade"),
    path("subscriptions/cancel/", CancelSubscriptionView.as_view(), name="subscription-cancel"),
    path("subscriptions/reactivate/", ReactivateSubscriptionView.as_view(), name="subscription-reactivate"),
    path("payments/", PaymentListView.as_view(), name="payment-list"),
    path("payments/<uuid:payment_id>/", PaymentDetailView.as_view(), name="payment-detail"),
    path("webhooks/provider/", ProviderWebhookView.as_view(), name="provider-webhook"),
]
