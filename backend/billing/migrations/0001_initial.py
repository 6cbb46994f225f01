import django.core.validators
import django.db.models.deletion
import uuid
from django.db import migrations, models

import billing.models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('accounts', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='SubscriptionPlan',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('name', models.CharField(max_length=100)),
                ('features', models.TextField(blank=True, help_text='Feature descriptor shown to buyers')),
                ('price', models.DecimalField(decimal_places=2, help_text='Price per billing period in major currency units', max_digits=10, validators=[django.core.validators.MinValueValidator(0)])),
                ('currency', models.CharField(default=billing.models._default_currency, max_length=3)),
                ('duration_days', models.PositiveIntegerField(help_text='Billing period length in days')),
                ('interval', models.CharField(choices=[('day', 'Day'), ('week', 'Week'), ('month', 'Month'), ('year', 'Year')], max_length=10)),
                ('interval_count', models.PositiveIntegerField(default=1)),
                ('audience', models.CharField(choices=[('CLINIC', 'Clinic'), ('INDIVIDUAL_THERAPIST', 'Individual therapist')], max_length=32)),
                ('stripe_product_id', models.CharField(blank=True, max_length=255)),
                ('stripe_price_id', models.CharField(blank=True, help_text='Active external recurring price for new purchases', max_length=255, null=True, unique=True)),
                ('expired_at', models.DateTimeField(blank=True, help_text='Soft delete marker; retired plans cannot be purchased', null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('superseded_by', models.ForeignKey(blank=True, help_text='Newer plan version that replaced this one', null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='previous_versions', to='billing.subscriptionplan')),
            ],
            options={
                'verbose_name': 'Subscription plan',
                'verbose_name_plural': 'Subscription plans',
                'db_table': 'billing_subscription_plan',
                'ordering': ['price', 'name'],
                'indexes': [models.Index(fields=['audience', 'expired_at'], name='billing_plan_audience_idx')],
            },
        ),
        migrations.CreateModel(
            name='PaymentMethod',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('stripe_payment_method_id', models.CharField(max_length=255, unique=True)),
                ('stripe_customer_id', models.CharField(blank=True, max_length=255)),
                ('card_holder_name', models.CharField(blank=True, max_length=255)),
                ('card_last4', models.CharField(blank=True, max_length=4)),
                ('card_brand', models.CharField(blank=True, max_length=32)),
                ('expiry_month', models.PositiveSmallIntegerField(blank=True, null=True)),
                ('expiry_year', models.PositiveSmallIntegerField(blank=True, null=True)),
                ('billing_address_line1', models.CharField(blank=True, max_length=255)),
                ('billing_address_line2', models.CharField(blank=True, max_length=255)),
                ('billing_city', models.CharField(blank=True, max_length=100)),
                ('billing_state', models.CharField(blank=True, max_length=100)),
                ('billing_postal_code', models.CharField(blank=True, max_length=20)),
                ('billing_country', models.CharField(blank=True, max_length=2)),
                ('is_default', models.BooleanField(default=False)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('clinic', models.ForeignKey(blank=True, help_text='Owning clinic when the row belongs to a practice', null=True, on_delete=django.db.models.deletion.CASCADE, related_name='+', to='accounts.privateclinic')),
                ('therapist', models.ForeignKey(blank=True, help_text='Owning therapist when the row belongs to an individual', null=True, on_delete=django.db.models.deletion.CASCADE, related_name='+', to='accounts.therapist')),
            ],
            options={
                'verbose_name': 'Payment method',
                'verbose_name_plural': 'Payment methods',
                'db_table': 'billing_payment_method',
                'ordering': ['-is_default', '-created_at'],
                'constraints': [
                    models.CheckConstraint(condition=models.Q(models.Q(('clinic__isnull', False), ('therapist__isnull', True)), models.Q(('clinic__isnull', True), ('therapist__isnull', False)), _connector='OR'), name='payment_method_owner_xor'),
                    models.UniqueConstraint(condition=models.Q(('is_default', True), ('clinic__isnull', False)), fields=('clinic',), name='payment_method_one_default_per_clinic'),
                    models.UniqueConstraint(condition=models.Q(('is_default', True), ('therapist__isnull', False)), fields=('therapist',), name='payment_method_one_default_per_therapist'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Subscription',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('stripe_subscription_id', models.CharField(max_length=255, unique=True)),
                ('stripe_customer_id', models.CharField(blank=True, max_length=255)),
                ('status', models.CharField(choices=[('incomplete', 'Incomplete'), ('incomplete_expired', 'Incomplete expired'), ('trialing', 'Trialing'), ('active', 'Active'), ('past_due', 'Past due'), ('unpaid', 'Unpaid'), ('canceled', 'Canceled')], default='incomplete', max_length=32)),
                ('current_period_start', models.DateTimeField()),
                ('current_period_end', models.DateTimeField()),
                ('cancel_at_period_end', models.BooleanField(default=False)),
                ('canceled_at', models.DateTimeField(blank=True, null=True)),
                ('provider_synced_at', models.DateTimeField(blank=True, help_text='Provider timestamp of the newest state applied to this row', null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('clinic', models.ForeignKey(blank=True, help_text='Owning clinic when the row belongs to a practice', null=True, on_delete=django.db.models.deletion.CASCADE, related_name='+', to='accounts.privateclinic')),
                ('therapist', models.ForeignKey(blank=True, help_text='Owning therapist when the row belongs to an individual', null=True, on_delete=django.db.models.deletion.CASCADE, related_name='+', to='accounts.therapist')),
                ('plan', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='subscriptions', to='billing.subscriptionplan')),
            ],
            options={
                'verbose_name': 'Subscription',
                'verbose_name_plural': 'Subscriptions',
                'db_table': 'billing_subscription',
                'ordering': ['-created_at'],
                'indexes': [models.Index(fields=['status'], name='billing_sub_status_idx')],
                'constraints': [
                    models.CheckConstraint(condition=models.Q(models.Q(('clinic__isnull', False), ('therapist__isnull', True)), models.Q(('clinic__isnull', True), ('therapist__isnull', False)), _connector='OR'), name='subscription_owner_xor'),
                    models.UniqueConstraint(condition=models.Q(('status__in', ['active', 'trialing']), ('clinic__isnull', False)), fields=('clinic',), name='subscription_one_live_per_clinic'),
                    models.UniqueConstraint(condition=models.Q(('status__in', ['active', 'trialing']), ('therapist__isnull', False)), fields=('therapist',), name='subscription_one_live_per_therapist'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Payment',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('stripe_subscription_id', models.CharField(blank=True, max_length=255)),
                ('stripe_payment_intent_id', models.CharField(max_length=255, unique=True)),
                ('stripe_charge_id', models.CharField(blank=True, max_length=255)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=12)),
                ('currency', models.CharField(default=billing.models._default_currency, max_length=3)),
                ('status', models.CharField(choices=[('succeeded', 'Succeeded'), ('pending', 'Pending'), ('failed', 'Failed'), ('canceled', 'Canceled'), ('refunded', 'Refunded')], max_length=20)),
                ('description', models.CharField(blank=True, max_length=255)),
                ('payment_method_last4', models.CharField(blank=True, max_length=4)),
                ('payment_method_brand', models.CharField(blank=True, max_length=32)),
                ('payment_type', models.CharField(default='subscription', max_length=32)),
                ('paid_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('clinic', models.ForeignKey(blank=True, help_text='Owning clinic when the row belongs to a practice', null=True, on_delete=django.db.models.deletion.CASCADE, related_name='+', to='accounts.privateclinic')),
                ('therapist', models.ForeignKey(blank=True, help_text='Owning therapist when the row belongs to an individual', null=True, on_delete=django.db.models.deletion.CASCADE, related_name='+', to='accounts.therapist')),
                ('subscription', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='payments', to='billing.subscription')),
            ],
            options={
                'verbose_name': 'Payment',
                'verbose_name_plural': 'Payments',
                'db_table': 'billing_payment',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['clinic', 'created_at'], name='billing_payment_clinic_idx'),
                    models.Index(fields=['therapist', 'created_at'], name='billing_payment_therapist_idx'),
                ],
                'constraints': [
                    models.CheckConstraint(condition=models.Q(models.Q(('clinic__isnull', False), ('therapist__isnull', True)), models.Q(('clinic__isnull', True), ('therapist__isnull', False)), _connector='OR'), name='payment_owner_xor'),
                ],
            },
        ),
        migrations.CreateModel(
            name='WebhookEventLog',
            fields=[
                ('id', models.BigAutoField(primary_key=True, serialize=False)),
                ('event_id', models.CharField(max_length=255, unique=True)),
                ('event_type', models.CharField(blank=True, max_length=255)),
                ('payload_hash', models.CharField(blank=True, help_text='SHA256 of the raw payload for drift detection.', max_length=64)),
                ('status', models.CharField(choices=[('received', 'Received'), ('processed', 'Processed'), ('ignored', 'Ignored'), ('failed', 'Failed')], default='received', max_length=20)),
                ('handled', models.BooleanField(default=False, help_text='True once the event has been fully processed.')),
                ('last_error', models.TextField(blank=True)),
                ('received_at', models.DateTimeField(auto_now_add=True)),
                ('processed_at', models.DateTimeField(blank=True, null=True)),
            ],
            options={
                'verbose_name': 'Webhook event log',
                'verbose_name_plural': 'Webhook event logs',
                'db_table': 'billing_webhook_event_log',
                'ordering': ['-received_at'],
                'indexes': [
                    models.Index(fields=['status'], name='webhook_event_status_idx'),
                    models.Index(fields=['event_type'], name='webhook_event_type_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='BillingAuditLog',
            fields=[
                ('id', models.BigAutoField(primary_key=True, serialize=False)),
                ('account_kind', models.CharField(blank=True, max_length=20)),
                ('account_id', models.UUIDField(blank=True, null=True)),
                ('event_type', models.CharField(help_text='Classification of the billing event.', max_length=100)),
                ('stripe_id', models.CharField(blank=True, help_text='Provider object identifier tied to the event.', max_length=255)),
                ('actor', models.CharField(blank=True, help_text='Auth user or system actor responsible.', max_length=255)),
                ('request_id', models.CharField(blank=True, help_text='Correlation or request identifier for tracing.', max_length=255)),
                ('details', models.JSONField(blank=True, help_text='Structured data describing the event.', null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
            ],
            options={
                'verbose_name': 'Billing audit log',
                'verbose_name_plural': 'Billing audit logs',
                'db_table': 'billing_audit_log',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['account_kind', 'account_id'], name='billing_audit_account_idx'),
                    models.Index(fields=['stripe_id'], name='billing_audit_stripe_idx'),
                ],
            },
        ),
    ]
