# Generated migration for the billing ledger

from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion
import django.utils.timezone
import uuid


BILLING_TYPE_CHOICES = [
    ('tiss', 'TISS'),
    ('private', 'Private'),
    ('cash', 'Cash'),
    ('insurance', 'Insurance'),
    ('corporate', 'Corporate'),
]

ITEM_TYPE_CHOICES = [
    ('consultation', 'Consultation'),
    ('procedure', 'Procedure'),
    ('exam', 'Exam'),
    ('medication', 'Medication'),
    ('material', 'Material'),
    ('other', 'Other'),
]

TERMINAL_STATUS_CHOICES = [
    ('cancelled', 'Cancelled'),
    ('disputed', 'Disputed'),
    ('refunded', 'Refunded'),
]

PAYMENT_METHOD_CHOICES = [
    ('cash', 'Cash'),
    ('credit_card', 'Credit card'),
    ('debit_card', 'Debit card'),
    ('bank_transfer', 'Bank transfer'),
    ('check', 'Check'),
    ('pix', 'PIX'),
    ('boleto', 'Boleto'),
]

PAYMENT_KIND_CHOICES = [
    ('payment', 'Payment'),
    ('correction', 'Correction'),
    ('refund', 'Refund'),
]

PAYOUT_STATUS_CHOICES = [
    ('pending', 'Pending'),
    ('paid', 'Paid'),
]

AUDIT_ACTION_CHOICES = [
    ('billing_created', 'Billing created'),
    ('payment_recorded', 'Payment recorded'),
    ('correction_recorded', 'Correction recorded'),
    ('billing_cancelled', 'Billing cancelled'),
    ('billing_disputed', 'Billing disputed'),
    ('billing_refunded', 'Billing refunded'),
    ('payout_calculated', 'Payout calculated'),
    ('payout_paid', 'Payout paid'),
]

AUDIT_ENTITY_TYPE_CHOICES = [
    ('BillingRecord', 'Billing record'),
    ('Payment', 'Payment'),
    ('PhysicianPayout', 'Physician payout'),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='DocumentSequence',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('prefix', models.CharField(max_length=8)),
                ('year', models.PositiveIntegerField()),
                ('last_value', models.PositiveIntegerField(default=0)),
            ],
            options={
                'db_table': 'billing_document_sequences',
                'constraints': [
                    models.UniqueConstraint(fields=('prefix', 'year'), name='uniq_document_sequence_prefix_year'),
                ],
            },
        ),
        migrations.CreateModel(
            name='BillingRecord',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('billing_number', models.CharField(
                    editable=False,
                    help_text='Human-readable billing number (e.g., BIL-2026-000001)',
                    max_length=32,
                    unique=True,
                    verbose_name='Billing Number'
                )),
                ('patient_ref', models.CharField(db_index=True, max_length=64, verbose_name='Patient')),
                ('doctor_ref', models.CharField(db_index=True, max_length=64, verbose_name='Doctor')),
                ('billing_type', models.CharField(choices=BILLING_TYPE_CHOICES, max_length=20, verbose_name='Billing Type')),
                ('billing_date', models.DateField(verbose_name='Billing Date')),
                ('due_date', models.DateField(verbose_name='Due Date')),
                ('currency', models.CharField(max_length=3, verbose_name='Currency')),
                ('subtotal_amount', models.BigIntegerField(help_text='Sum of line totals', verbose_name='Subtotal')),
                ('tax_amount', models.BigIntegerField(default=0, verbose_name='Tax')),
                ('discount_amount', models.BigIntegerField(default=0, verbose_name='Discount')),
                ('total_amount', models.BigIntegerField(help_text='subtotal + tax - discount', verbose_name='Total')),
                ('insurance_company', models.CharField(blank=True, default='', max_length=255, verbose_name='Insurance Company')),
                ('insurance_number', models.CharField(blank=True, default='', max_length=100, verbose_name='Insurance Number')),
                ('notes', models.TextField(blank=True, default='', verbose_name='Notes')),
                ('terminal_status', models.CharField(
                    blank=True,
                    choices=TERMINAL_STATUS_CHOICES,
                    max_length=20,
                    null=True,
                    verbose_name='Terminal Status'
                )),
                ('status_reason', models.TextField(blank=True, default='', verbose_name='Status Reason')),
                ('status_changed_at', models.DateTimeField(blank=True, null=True, verbose_name='Status Changed At')),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='Created At')),
                ('updated_at', models.DateTimeField(auto_now=True, verbose_name='Updated At')),
                ('created_by', models.ForeignKey(
                    blank=True,
                    null=True,
                    on_delete=django.db.models.deletion.SET_NULL,
                    related_name='billing_records_created',
                    to=settings.AUTH_USER_MODEL
                )),
                ('status_changed_by', models.ForeignKey(
                    blank=True,
                    null=True,
                    on_delete=django.db.models.deletion.SET_NULL,
                    related_name='+',
                    to=settings.AUTH_USER_MODEL
                )),
            ],
            options={
                'verbose_name': 'Billing Record',
                'verbose_name_plural': 'Billing Records',
                'db_table': 'billing_records',
                'ordering': ['-billing_date', 'billing_number'],
                'indexes': [
                    models.Index(fields=['-billing_date', 'billing_number'], name='idx_billing_date_number'),
                    models.Index(fields=['doctor_ref', 'billing_date'], name='idx_billing_doctor_date'),
                    models.Index(fields=['due_date'], name='idx_billing_due_date'),
                ],
                'constraints': [
                    models.CheckConstraint(condition=models.Q(('total_amount__gte', 0)), name='billing_total_non_negative'),
                    models.CheckConstraint(condition=models.Q(('subtotal_amount__gte', 0)), name='billing_subtotal_non_negative'),
                    models.CheckConstraint(condition=models.Q(('tax_amount__gte', 0)), name='billing_tax_non_negative'),
                    models.CheckConstraint(condition=models.Q(('discount_amount__gte', 0)), name='billing_discount_non_negative'),
                ],
            },
        ),
        migrations.CreateModel(
            name='BillingItem',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('position', models.PositiveIntegerField(default=0, verbose_name='Position')),
                ('item_type', models.CharField(choices=ITEM_TYPE_CHOICES, max_length=20, verbose_name='Item Type')),
                ('item_name', models.CharField(max_length=255, verbose_name='Item')),
                ('quantity', models.PositiveIntegerField(verbose_name='Quantity')),
                ('unit_price', models.BigIntegerField(help_text='Minor units, >= 0', verbose_name='Unit Price')),
                ('line_total', models.BigIntegerField(help_text='quantity * unit_price', verbose_name='Line Total')),
                ('billing', models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name='items',
                    to='billing.billingrecord',
                    verbose_name='Billing'
                )),
            ],
            options={
                'verbose_name': 'Billing Item',
                'verbose_name_plural': 'Billing Items',
                'db_table': 'billing_items',
                'ordering': ['billing', 'position'],
                'constraints': [
                    models.CheckConstraint(condition=models.Q(('quantity__gt', 0)), name='billing_item_quantity_positive'),
                    models.CheckConstraint(condition=models.Q(('unit_price__gte', 0)), name='billing_item_unit_price_non_negative'),
                    models.CheckConstraint(condition=models.Q(('line_total__gte', 0)), name='billing_item_total_non_negative'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Payment',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('sequence', models.PositiveIntegerField(verbose_name='Sequence')),
                ('kind', models.CharField(choices=PAYMENT_KIND_CHOICES, default='payment', max_length=20, verbose_name='Kind')),
                ('method', models.CharField(blank=True, choices=PAYMENT_METHOD_CHOICES, default='', max_length=20, verbose_name='Method')),
                ('amount', models.BigIntegerField(help_text='Minor units', verbose_name='Amount')),
                ('currency', models.CharField(max_length=3, verbose_name='Currency')),
                ('payment_date', models.DateTimeField(verbose_name='Payment Date')),
                ('transaction_id', models.CharField(blank=True, default='', max_length=128, verbose_name='Transaction ID')),
                ('bank_name', models.CharField(blank=True, default='', max_length=128, verbose_name='Bank')),
                ('account_number', models.CharField(blank=True, default='', max_length=64, verbose_name='Account Number')),
                ('check_number', models.CharField(blank=True, default='', max_length=64, verbose_name='Check Number')),
                ('notes', models.TextField(blank=True, default='', verbose_name='Notes')),
                ('caused_overpayment', models.BooleanField(
                    default=False,
                    help_text='Paid amount exceeded the billing total after this entry',
                    verbose_name='Caused Overpayment'
                )),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='Created At')),
                ('billing', models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name='payments',
                    to='billing.billingrecord',
                    verbose_name='Billing'
                )),
                ('created_by', models.ForeignKey(
                    blank=True,
                    null=True,
                    on_delete=django.db.models.deletion.SET_NULL,
                    related_name='billing_payments_created',
                    to=settings.AUTH_USER_MODEL
                )),
            ],
            options={
                'verbose_name': 'Payment',
                'verbose_name_plural': 'Payments',
                'db_table': 'billing_payments',
                'ordering': ['billing', 'sequence'],
                'indexes': [
                    models.Index(fields=['payment_date'], name='idx_payment_date'),
                ],
                'constraints': [
                    models.UniqueConstraint(fields=('billing', 'sequence'), name='uniq_payment_billing_sequence'),
                    models.CheckConstraint(
                        condition=(
                            models.Q(('kind', 'payment'), ('amount__gt', 0))
                            | models.Q(('kind__in', ['correction', 'refund']), ('amount__lt', 0))
                        ),
                        name='payment_amount_sign_matches_kind'
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name='PhysicianPayout',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('payout_number', models.CharField(editable=False, max_length=32, unique=True, verbose_name='Payout Number')),
                ('doctor_ref', models.CharField(db_index=True, max_length=64, verbose_name='Doctor')),
                ('period_start', models.DateField(verbose_name='Period Start')),
                ('period_end', models.DateField(verbose_name='Period End')),
                ('currency', models.CharField(max_length=3, verbose_name='Currency')),
                ('gross_revenue', models.BigIntegerField(verbose_name='Gross Revenue')),
                ('facility_fee', models.BigIntegerField(verbose_name='Facility Fee')),
                ('net_payout', models.BigIntegerField(verbose_name='Net Payout')),
                ('consultation_count', models.PositiveIntegerField(default=0, verbose_name='Consultations')),
                ('procedure_count', models.PositiveIntegerField(default=0, verbose_name='Procedures')),
                ('fee_policy', models.JSONField(default=dict, help_text='Facility fee policy applied', verbose_name='Fee Policy')),
                ('status', models.CharField(choices=PAYOUT_STATUS_CHOICES, default='pending', max_length=20, verbose_name='Status')),
                ('payout_date', models.DateField(blank=True, null=True, verbose_name='Payout Date')),
                ('calculated_at', models.DateTimeField(default=django.utils.timezone.now, verbose_name='Calculated At')),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='Created At')),
                ('updated_at', models.DateTimeField(auto_now=True, verbose_name='Updated At')),
                ('billings', models.ManyToManyField(
                    blank=True,
                    related_name='payouts',
                    to='billing.billingrecord',
                    verbose_name='Contributing billing records'
                )),
                ('created_by', models.ForeignKey(
                    blank=True,
                    null=True,
                    on_delete=django.db.models.deletion.SET_NULL,
                    related_name='payouts_created',
                    to=settings.AUTH_USER_MODEL
                )),
                ('paid_by', models.ForeignKey(
                    blank=True,
                    null=True,
                    on_delete=django.db.models.deletion.SET_NULL,
                    related_name='payouts_paid',
                    to=settings.AUTH_USER_MODEL
                )),
            ],
            options={
                'verbose_name': 'Physician Payout',
                'verbose_name_plural': 'Physician Payouts',
                'db_table': 'physician_payouts',
                'ordering': ['-period_start', 'payout_number'],
                'indexes': [
                    models.Index(fields=['doctor_ref', 'period_start', 'period_end'], name='idx_payout_doctor_period'),
                ],
                'constraints': [
                    models.UniqueConstraint(fields=('doctor_ref', 'period_start', 'period_end'), name='uniq_payout_doctor_period'),
                    models.CheckConstraint(condition=models.Q(('period_end__gte', models.F('period_start'))), name='payout_period_ordered'),
                    models.CheckConstraint(condition=models.Q(('gross_revenue__gte', 0)), name='payout_gross_non_negative'),
                    models.CheckConstraint(condition=models.Q(('net_payout__gte', 0)), name='payout_net_non_negative'),
                ],
            },
        ),
        migrations.CreateModel(
            name='LedgerAuditEntry',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('action', models.CharField(choices=AUDIT_ACTION_CHOICES, max_length=32)),
                ('entity_type', models.CharField(choices=AUDIT_ENTITY_TYPE_CHOICES, max_length=32)),
                ('entity_id', models.UUIDField()),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('actor', models.ForeignKey(
                    blank=True,
                    help_text='User who performed the action (null for system actions)',
                    null=True,
                    on_delete=django.db.models.deletion.SET_NULL,
                    related_name='ledger_audit_entries',
                    to=settings.AUTH_USER_MODEL
                )),
                ('billing', models.ForeignKey(
                    blank=True,
                    null=True,
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name='audit_entries',
                    to='billing.billingrecord'
                )),
                ('payout', models.ForeignKey(
                    blank=True,
                    null=True,
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name='audit_entries',
                    to='billing.physicianpayout'
                )),
            ],
            options={
                'verbose_name': 'Ledger Audit Entry',
                'verbose_name_plural': 'Ledger Audit Entries',
                'db_table': 'billing_audit_entries',
                'ordering': ['created_at'],
                'indexes': [
                    models.Index(fields=['entity_type', 'entity_id'], name='idx_ledger_audit_entity'),
                ],
            },
        ),
    ]
