# core/migrations/0001_initial.py


from decimal import Decimal

import django.contrib.auth.models
import django.contrib.auth.validators
import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("auth", "0012_alter_user_first_name_max_length"),
    ]

    operations = [
        migrations.CreateModel(
            name="CustomUser",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("password", models.CharField(max_length=128, verbose_name="password")),
                ("last_login", models.DateTimeField(blank=True, null=True, verbose_name="last login")),
                ("is_superuser", models.BooleanField(default=False, help_text="Designates that this user has all permissions without explicitly assigning them.", verbose_name="superuser status")),
                ("username", models.CharField(error_messages={"unique": "A user with that username already exists."}, help_text="Required. 150 characters or fewer. Letters, digits and @/./+/-/_ only.", max_length=150, unique=True, validators=[django.contrib.auth.validators.UnicodeUsernameValidator()], verbose_name="username")),
                ("first_name", models.CharField(blank=True, max_length=150, verbose_name="first name")),
                ("last_name", models.CharField(blank=True, max_length=150, verbose_name="last name")),
                ("email", models.EmailField(blank=True, max_length=254, verbose_name="email address")),
                ("is_staff", models.BooleanField(default=False, help_text="Designates whether the user can log into this admin site.", verbose_name="staff status")),
                ("is_active", models.BooleanField(default=True, help_text="Designates whether this user should be treated as active. Unselect this instead of deleting accounts.", verbose_name="active")),
                ("date_joined", models.DateTimeField(default=django.utils.timezone.now, verbose_name="date joined")),
                ("role", models.CharField(choices=[("client", "Client"), ("provider", "Service Provider"), ("admin", "Admin")], default="client", max_length=10)),
                ("phone_number", models.CharField(blank=True, max_length=20, null=True)),
                ("groups", models.ManyToManyField(blank=True, help_text="The groups this user belongs to. A user will get all permissions granted to each of their groups.", related_name="user_set", related_query_name="user", to="auth.group", verbose_name="groups")),
                ("user_permissions", models.ManyToManyField(blank=True, help_text="Specific permissions for this user.", related_name="user_set", related_query_name="user", to="auth.permission", verbose_name="user permissions")),
            ],
            options={
                "verbose_name": "user",
                "verbose_name_plural": "users",
                "abstract": False,
            },
            managers=[
                ("objects", django.contrib.auth.models.UserManager()),
            ],
        ),
        migrations.CreateModel(
            name="Service",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=120)),
                ("category", models.CharField(blank=True, max_length=60)),
                ("base_price", models.DecimalField(decimal_places=2, max_digits=10)),
                ("is_active", models.BooleanField(default=True)),
            ],
        ),
        migrations.CreateModel(
            name="ServiceProvider",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("bio", models.TextField(blank=True)),
                ("available", models.BooleanField(default=True)),
                ("location_latitude", models.FloatField(blank=True, null=True)),
                ("location_longitude", models.FloatField(blank=True, null=True)),
                ("service_radius_km", models.DecimalField(blank=True, decimal_places=2, max_digits=6, null=True)),
                ("bank_code", models.CharField(blank=True, max_length=20)),
                ("account_number", models.CharField(blank=True, max_length=30)),
                ("account_name", models.CharField(blank=True, max_length=120)),
                ("payout_currency", models.CharField(blank=True, max_length=3)),
                ("recipient_code", models.CharField(blank=True, max_length=64)),
                ("user", models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name="provider_profile", to=settings.AUTH_USER_MODEL)),
            ],
        ),
        migrations.CreateModel(
            name="Booking",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("scheduled_date", models.DateTimeField()),
                ("duration", models.PositiveIntegerField(help_text="Minutes")),
                ("total_amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("platform_fee", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("address", models.CharField(max_length=255)),
                ("location_latitude", models.FloatField(blank=True, null=True)),
                ("location_longitude", models.FloatField(blank=True, null=True)),
                ("notes", models.TextField(blank=True)),
                ("status", models.CharField(choices=[("PENDING", "Pending"), ("CONFIRMED", "Confirmed"), ("PENDING_EXECUTION", "Pending execution"), ("IN_PROGRESS", "In progress"), ("AWAITING_CONFIRMATION", "Awaiting confirmation"), ("COMPLETED", "Completed"), ("CANCELLED", "Cancelled"), ("DISPUTED", "Disputed")], default="PENDING", max_length=32)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("accepted_at", models.DateTimeField(blank=True, null=True)),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                ("cancelled_by", models.CharField(blank=True, choices=[("client", "Client"), ("provider", "Provider"), ("system", "System"), ("admin", "Admin")], max_length=20, null=True)),
                ("client", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="bookings", to=settings.AUTH_USER_MODEL)),
                ("provider", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="bookings", to="core.serviceprovider")),
                ("service", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="bookings", to="core.service")),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [models.Index(fields=["status"], name="core_booking_status_idx")],
            },
        ),
        migrations.CreateModel(
            name="Payment",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("escrow_amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("platform_fee", models.DecimalField(decimal_places=2, max_digits=12)),
                ("currency", models.CharField(max_length=3)),
                ("paystack_ref", models.CharField(max_length=100, unique=True)),
                ("status", models.CharField(choices=[("PENDING", "Pending"), ("ESCROW", "Held in escrow"), ("PROCESSING_RELEASE", "Processing release"), ("RELEASED", "Released"), ("REFUNDED", "Refunded"), ("FAILED", "Failed")], default="PENDING", max_length=32)),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                ("failure_reason", models.TextField(blank=True)),
                ("refund_ref", models.CharField(blank=True, max_length=100)),
                ("refunded_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("booking", models.OneToOneField(on_delete=django.db.models.deletion.PROTECT, related_name="payment", to="core.booking")),
            ],
            options={
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("amount", models.F("escrow_amount") + models.F("platform_fee"))), name="core_payment_breakdown_sums_to_amount"),
                    models.CheckConstraint(condition=models.Q(("escrow_amount__gte", 0), ("platform_fee__gte", 0)), name="core_payment_breakdown_non_negative"),
                ],
            },
        ),
        migrations.CreateModel(
            name="JobProof",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("photos", models.JSONField(blank=True, default=list)),
                ("notes", models.TextField(blank=True)),
                ("completed_at", models.DateTimeField()),
                ("client_confirmed", models.BooleanField(blank=True, null=True)),
                ("confirmed_at", models.DateTimeField(blank=True, null=True)),
                ("confirmed_by", models.CharField(blank=True, choices=[("client", "Client"), ("system", "Auto-confirm"), ("dispute", "Dispute resolution")], max_length=10)),
                ("auto_confirm_at", models.DateTimeField()),
                ("booking", models.OneToOneField(on_delete=django.db.models.deletion.PROTECT, related_name="job_proof", to="core.booking")),
                ("provider", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="job_proofs", to="core.serviceprovider")),
            ],
            options={
                "indexes": [models.Index(fields=["client_confirmed", "auto_confirm_at"], name="core_proof_autoconfirm_idx")],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("auto_confirm_at__gte", models.F("completed_at"))), name="core_proof_auto_confirm_after_completion"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Payout",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("currency", models.CharField(max_length=3)),
                ("reference", models.CharField(max_length=100, unique=True)),
                ("status", models.CharField(choices=[("PENDING", "Pending"), ("PROCESSING", "Processing"), ("COMPLETED", "Completed"), ("FAILED", "Failed"), ("CANCELLED", "Cancelled")], default="PENDING", max_length=20)),
                ("transfer_code", models.CharField(blank=True, max_length=100)),
                ("attempts", models.PositiveSmallIntegerField(default=0)),
                ("failure_reason", models.TextField(blank=True)),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("payment", models.OneToOneField(on_delete=django.db.models.deletion.PROTECT, related_name="payout", to="core.payment")),
                ("provider", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="payouts", to="core.serviceprovider")),
            ],
            options={
                "indexes": [models.Index(fields=["status"], name="core_payout_status_idx")],
            },
        ),
        migrations.CreateModel(
            name="Dispute",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("reason", models.TextField()),
                ("status", models.CharField(choices=[("PENDING", "Pending"), ("RESOLVED", "Resolved"), ("ESCALATED", "Escalated")], default="PENDING", max_length=20)),
                ("resolution", models.TextField(blank=True)),
                ("outcome", models.CharField(blank=True, choices=[("RELEASE", "Release to provider"), ("REFUND", "Refund client")], max_length=10)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("resolved_at", models.DateTimeField(blank=True, null=True)),
                ("booking", models.OneToOneField(on_delete=django.db.models.deletion.PROTECT, related_name="dispute", to="core.booking")),
                ("raised_by", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="disputes_raised", to=settings.AUTH_USER_MODEL)),
                ("resolved_by", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name="disputes_resolved", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="Notification",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("message", models.TextField()),
                ("notification_type", models.CharField(default="info", max_length=40)),
                ("read", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, to=settings.AUTH_USER_MODEL)),
            ],
        ),
    ]
