import uuid

import django.contrib.auth.models
import django.contrib.auth.validators
import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models

import rxmarket.models


ROLE_CHOICES = [('patient', 'Patient'), ('doctor', 'Doctor'), ('pharmacy', 'Pharmacy'), ('admin', 'Admin')]

REQUEST_STATUS_CHOICES = [
    ('draft', 'Draft'),
    ('pending', 'Pending'),
    ('submitted', 'Submitted'),
    ('accepted', 'Accepted'),
    ('in_preparation', 'In preparation'),
    ('ready', 'Ready'),
    ('fulfilled', 'Fulfilled'),
    ('cancelled', 'Cancelled'),
]

NOTIFICATION_TYPE_CHOICES = [
    ('prescription_created', 'Prescription created'),
    ('prescription_updated', 'Prescription updated'),
    ('prescription_ready', 'Prescription ready'),
    ('prescription_review_required', 'Prescription review required'),
    ('prescription_request', 'New prescription request'),
    ('prescription_accepted', 'Pharmacy accepted request'),
    ('prescription_declined', 'Pharmacy declined request'),
    ('prescription_partial', 'Pharmacy partially accepted request'),
    ('prescription_selected', 'Pharmacy selected'),
    ('prescription_not_selected', 'Pharmacy not selected'),
    ('prescription_cancelled', 'Prescription request cancelled'),
    ('prescription_expired', 'Prescription request expired'),
    ('response_reminder', 'Waiting for pharmacy responses'),
    ('order_placed', 'Order placed'),
    ('order_confirmed', 'Order confirmed'),
    ('order_ready', 'Order ready'),
    ('order_delivered', 'Order delivered'),
    ('order_cancelled', 'Order cancelled'),
    ('appointment_scheduled', 'Appointment scheduled'),
    ('appointment_reminder', 'Appointment reminder'),
    ('appointment_cancelled', 'Appointment cancelled'),
    ('appointment_rescheduled', 'Appointment rescheduled'),
    ('consultation_request', 'Consultation request'),
    ('consultation_completed', 'Consultation completed'),
    ('payment_successful', 'Payment successful'),
    ('payment_failed', 'Payment failed'),
    ('payment_refunded', 'Payment refunded'),
    ('inventory_low_stock', 'Low stock'),
    ('inventory_out_of_stock', 'Out of stock'),
    ('inventory_expired', 'Inventory expired'),
    ('user_registered', 'User registered'),
    ('user_verified', 'User verified'),
    ('password_reset', 'Password reset'),
    ('profile_updated', 'Profile updated'),
    ('document_uploaded', 'Document uploaded'),
    ('verification_required', 'Verification required'),
    ('security_alert', 'Security alert'),
    ('system_maintenance', 'System maintenance'),
    ('system_update', 'System update'),
    ('system_alert', 'System alert'),
    ('alert_escalation', 'Alert escalation'),
]

DELIVERY_STATUS_CHOICES = [
    ('pending', 'Pending'), ('delivered', 'Delivered'), ('failed', 'Failed'), ('cancelled', 'Cancelled'),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('auth', '0012_alter_user_first_name_max_length'),
    ]

    operations = [
        migrations.CreateModel(
            name='User',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('password', models.CharField(max_length=128, verbose_name='password')),
                ('last_login', models.DateTimeField(blank=True, null=True, verbose_name='last login')),
                ('is_superuser', models.BooleanField(default=False, help_text='Designates that this user has all permissions without explicitly assigning them.', verbose_name='superuser status')),
                ('username', models.CharField(error_messages={'unique': 'A user with that username already exists.'}, help_text='Required. 150 characters or fewer. Letters, digits and @/./+/-/_ only.', max_length=150, unique=True, validators=[django.contrib.auth.validators.UnicodeUsernameValidator()], verbose_name='username')),
                ('first_name', models.CharField(blank=True, max_length=150, verbose_name='first name')),
                ('last_name', models.CharField(blank=True, max_length=150, verbose_name='last name')),
                ('email', models.EmailField(blank=True, max_length=254, verbose_name='email address')),
                ('is_staff', models.BooleanField(default=False, help_text='Designates whether the user can log into this admin site.', verbose_name='staff status')),
                ('is_active', models.BooleanField(default=True, help_text='Designates whether this user should be treated as active. Unselect this instead of deleting accounts.', verbose_name='active')),
                ('date_joined', models.DateTimeField(default=django.utils.timezone.now, verbose_name='date joined')),
                ('role', models.CharField(choices=ROLE_CHOICES, default='patient', max_length=20)),
                ('phone', models.CharField(blank=True, default='', max_length=20)),
                ('is_verified', models.BooleanField(default=False)),
                ('groups', models.ManyToManyField(blank=True, help_text='The groups this user belongs to. A user will get all permissions granted to each of their groups.', related_name='user_set', related_query_name='user', to='auth.group', verbose_name='groups')),
                ('user_permissions', models.ManyToManyField(blank=True, help_text='Specific permissions for this user.', related_name='user_set', related_query_name='user', to='auth.permission', verbose_name='user permissions')),
            ],
            options={
                'db_table': 'users',
            },
            managers=[
                ('objects', django.contrib.auth.models.UserManager()),
            ],
        ),
        migrations.CreateModel(
            name='Pharmacy',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('name', models.CharField(max_length=200)),
                ('is_active', models.BooleanField(default=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('owner', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='pharmacies', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'pharmacies',
            },
        ),
        migrations.CreateModel(
            name='PrescriptionRequest',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('request_number', models.CharField(max_length=24, unique=True)),
                ('medications', models.JSONField(default=list)),
                ('status', models.CharField(choices=REQUEST_STATUS_CHOICES, db_index=True, default='draft', max_length=20)),
                ('delivery_method', models.CharField(choices=[('pickup', 'Pickup'), ('delivery', 'Delivery'), ('either', 'Either')], default='pickup', max_length=20)),
                ('delivery_address', models.JSONField(blank=True, null=True)),
                ('urgency', models.CharField(choices=[('routine', 'Routine'), ('urgent', 'Urgent'), ('emergency', 'Emergency')], default='routine', max_length=20)),
                ('patient_notes', models.TextField(blank=True, default='')),
                ('selection_reason', models.TextField(blank=True, default='')),
                ('selected_at', models.DateTimeField(blank=True, null=True)),
                ('submitted_at', models.DateTimeField(blank=True, null=True)),
                ('fulfilled_at', models.DateTimeField(blank=True, null=True)),
                ('cancelled_at', models.DateTimeField(blank=True, null=True)),
                ('cancellation_reason', models.TextField(blank=True, default='')),
                ('expires_at', models.DateTimeField(default=rxmarket.models.default_request_expiry)),
                ('is_active', models.BooleanField(default=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('patient', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='prescription_requests', to=settings.AUTH_USER_MODEL)),
                ('selected_pharmacy', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='selected_requests', to='rxmarket.pharmacy')),
            ],
            options={
                'db_table': 'prescription_requests',
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='TargetPharmacy',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('notified_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('pharmacy', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='targeted_requests', to='rxmarket.pharmacy')),
                ('request', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='targets', to='rxmarket.prescriptionrequest')),
            ],
            options={
                'db_table': 'prescription_request_targets',
                'constraints': [models.UniqueConstraint(fields=('request', 'pharmacy'), name='uniq_target_per_request')],
            },
        ),
        migrations.CreateModel(
            name='PharmacyResponse',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('accepted', 'Accepted'), ('declined', 'Declined'), ('partial', 'Partial')], default='pending', max_length=20)),
                ('estimated_fulfillment_time', models.JSONField(blank=True, null=True)),
                ('quoted_price', models.JSONField(blank=True, null=True)),
                ('pharmacist_notes', models.TextField(blank=True, default='')),
                ('substitutions', models.JSONField(blank=True, default=list)),
                ('revision', models.PositiveIntegerField(default=1)),
                ('responded_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('pharmacy', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='responses', to='rxmarket.pharmacy')),
                ('request', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='responses', to='rxmarket.prescriptionrequest')),
            ],
            options={
                'db_table': 'pharmacy_responses',
                'constraints': [models.UniqueConstraint(fields=('request', 'pharmacy'), name='uniq_response_per_pharmacy')],
            },
        ),
        migrations.CreateModel(
            name='StatusHistory',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('status', models.CharField(choices=REQUEST_STATUS_CHOICES, max_length=20)),
                ('reason', models.CharField(blank=True, default='', max_length=255)),
                ('notes', models.TextField(blank=True, default='')),
                ('created_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('changed_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to=settings.AUTH_USER_MODEL)),
                ('request', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='status_history', to='rxmarket.prescriptionrequest')),
            ],
            options={
                'db_table': 'prescription_request_status_history',
                'ordering': ['created_at', 'id'],
            },
        ),
        migrations.CreateModel(
            name='Notification',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('type', models.CharField(choices=NOTIFICATION_TYPE_CHOICES, db_index=True, max_length=50)),
                ('category', models.CharField(choices=[('medical', 'Medical'), ('administrative', 'Administrative'), ('system', 'System'), ('marketing', 'Marketing')], max_length=20)),
                ('priority', models.CharField(choices=[('low', 'Low'), ('medium', 'Medium'), ('high', 'High'), ('critical', 'Critical'), ('emergency', 'Emergency')], default='medium', max_length=20)),
                ('title', models.CharField(max_length=200)),
                ('message', models.TextField()),
                ('action_url', models.CharField(blank=True, default='', max_length=500)),
                ('action_text', models.CharField(blank=True, default='', max_length=100)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('related_entities', models.JSONField(blank=True, default=list)),
                ('scheduled_for', models.DateTimeField(blank=True, db_index=True, null=True)),
                ('expires_at', models.DateTimeField(blank=True, null=True)),
                ('dispatched_at', models.DateTimeField(blank=True, null=True)),
                ('bypass_preferences', models.BooleanField(default=False)),
                ('retry_count', models.PositiveIntegerField(default=0)),
                ('last_retry_at', models.DateTimeField(blank=True, null=True)),
                ('total_recipients', models.PositiveIntegerField(default=0)),
                ('delivered_count', models.PositiveIntegerField(default=0)),
                ('read_count', models.PositiveIntegerField(default=0)),
                ('action_count', models.PositiveIntegerField(default=0)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('created_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'notifications',
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='NotificationRecipient',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('user_role', models.CharField(choices=ROLE_CHOICES, max_length=20)),
                ('delivery_channels', models.JSONField(default=list)),
                ('read_at', models.DateTimeField(blank=True, null=True)),
                ('action_taken', models.CharField(blank=True, default='', max_length=50)),
                ('action_taken_at', models.DateTimeField(blank=True, null=True)),
                ('notification', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='recipients', to='rxmarket.notification')),
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='notification_receipts', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'notification_recipients',
                'constraints': [models.UniqueConstraint(fields=('notification', 'user'), name='uniq_recipient_per_notification')],
            },
        ),
        migrations.CreateModel(
            name='ChannelDelivery',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('channel', models.CharField(choices=[('websocket', 'WebSocket push'), ('email', 'Email'), ('sms', 'SMS')], max_length=20)),
                ('status', models.CharField(choices=DELIVERY_STATUS_CHOICES, db_index=True, default='pending', max_length=20)),
                ('delivered_at', models.DateTimeField(blank=True, null=True)),
                ('error', models.TextField(blank=True, default='')),
                ('attempts', models.PositiveIntegerField(default=0)),
                ('created_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('updated_at', models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
                ('recipient', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='deliveries', to='rxmarket.notificationrecipient')),
            ],
            options={
                'db_table': 'notification_channel_deliveries',
                'constraints': [models.UniqueConstraint(fields=('recipient', 'channel'), name='uniq_delivery_per_channel')],
            },
        ),
        migrations.CreateModel(
            name='NotificationPreference',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('enabled', models.BooleanField(default=True)),
                ('channels', models.JSONField(default=rxmarket.models.default_channel_preferences)),
                ('categories', models.JSONField(blank=True, default=dict)),
                ('disabled_types', models.JSONField(blank=True, default=list)),
                ('quiet_hours_enabled', models.BooleanField(default=False)),
                ('quiet_hours_start', models.TimeField(blank=True, null=True)),
                ('quiet_hours_end', models.TimeField(blank=True, null=True)),
                ('timezone', models.CharField(default='UTC', max_length=64)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('user', models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name='notification_preference', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'notification_preferences',
            },
        ),
        migrations.CreateModel(
            name='Alert',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('alert_type', models.CharField(db_index=True, max_length=50)),
                ('severity', models.CharField(choices=[('info', 'Info'), ('warning', 'Warning'), ('critical', 'Critical')], max_length=20)),
                ('message', models.TextField()),
                ('data', models.JSONField(blank=True, default=dict)),
                ('source_key', models.CharField(db_index=True, max_length=200)),
                ('triggered_at', models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
                ('acknowledged_at', models.DateTimeField(blank=True, null=True)),
                ('acknowledgement_notes', models.TextField(blank=True, default='')),
                ('resolved_at', models.DateTimeField(blank=True, null=True)),
                ('resolution', models.TextField(blank=True, default='')),
                ('escalation_level', models.PositiveSmallIntegerField(default=0)),
                ('last_escalated_at', models.DateTimeField(blank=True, null=True)),
                ('next_escalation_at', models.DateTimeField(blank=True, db_index=True, null=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('acknowledged_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to=settings.AUTH_USER_MODEL)),
                ('resolved_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'alerts',
                'ordering': ['-triggered_at'],
            },
        ),
        migrations.CreateModel(
            name='EscalationRule',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('alert_type', models.CharField(max_length=50, unique=True)),
                ('threshold', models.FloatField(blank=True, null=True)),
                ('cooldown_minutes', models.PositiveIntegerField(default=30)),
                ('levels', models.JSONField(default=list)),
                ('enabled', models.BooleanField(default=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('updated_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'escalation_rules',
            },
        ),
        migrations.CreateModel(
            name='EscalationRuleAudit',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('alert_type', models.CharField(db_index=True, max_length=50)),
                ('previous', models.JSONField(blank=True, null=True)),
                ('current', models.JSONField()),
                ('changed_at', models.DateTimeField(auto_now_add=True)),
                ('changed_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'escalation_rule_audit',
                'ordering': ['-changed_at', '-id'],
            },
        ),
    ]
