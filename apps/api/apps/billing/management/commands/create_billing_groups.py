"""
Management command to create billing RBAC groups.

Usage:
    python manage.py create_billing_groups

Creates (idempotently):
- Reception: create billing records, record payments
- Finance: corrections, cancel/dispute/refund, physician payouts
- Accounting: read-only reports and dashboard
"""
from django.contrib.auth.models import Group
from django.core.management.base import BaseCommand

from apps.billing.permissions import ACCOUNTING, FINANCE, RECEPTION


class Command(BaseCommand):
    help = 'Create billing RBAC groups (Reception, Finance, Accounting)'

    def handle(self, *args, **options):
        groups = [
            (RECEPTION, 'Front desk - billing records and payments'),
            (FINANCE, 'Finance - reversals, status commands and payouts'),
            (ACCOUNTING, 'Accounting - read-only reports'),
        ]

        created_count = 0
        existing_count = 0

        for group_name, description in groups:
            _, created = Group.objects.get_or_create(name=group_name)

            if created:
                created_count += 1
                self.stdout.write(self.style.SUCCESS(f'Created group: {group_name} ({description})'))
            else:
                existing_count += 1
                self.stdout.write(self.style.WARNING(f'Group already exists: {group_name}'))

        self.stdout.write(
            self.style.SUCCESS(f'\nSummary: {created_count} created, {existing_count} existing')
        )
