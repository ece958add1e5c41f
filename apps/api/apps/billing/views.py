"""Billing views."""
from django.utils import timezone
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response
from rest_framework.views import APIView

from apps.core.observability import get_sanitized_logger

from . import dashboard, payouts, services
from .aging import build_aging_report, summarize_aging
from .exceptions import LedgerError
from .permissions import IsBillingStaff, IsFinanceOrAdmin
from .serializers import (
    AccountsReceivableSerializer,
    AgingSummarySerializer,
    AsOfQuerySerializer,
    BillingCreateSerializer,
    BillingListQuerySerializer,
    BillingRecordSerializer,
    ChartQuerySerializer,
    CorrectionCreateSerializer,
    DashboardQuerySerializer,
    DashboardSerializer,
    MarkPayoutPaidSerializer,
    PaymentCreateSerializer,
    PaymentSerializer,
    PayoutCalculateSerializer,
    PayoutListQuerySerializer,
    PhysicianPayoutSerializer,
    RefundSerializer,
    RevenueExpenseChartSerializer,
    StatusCommandSerializer,
)

logger = get_sanitized_logger(__name__)


def ledger_error_response(error: LedgerError, operation: str, **extra):
    """
    Translate a ledger error into its HTTP response.

    Body: {"error": <message>, "error_type": <code>, ...context}
    """
    logger.warning(
        f'{operation} failed - {error.error_type}',
        extra={'operation': operation, 'error_type': error.error_type, 'error': error.message, **extra}
    )
    return Response(error.to_dict(), status=error.status_code)


class BillingRecordViewSet(viewsets.GenericViewSet):
    """
    Billing records and their payment ledger.

    Additional endpoints:
    - POST /billings/{id}/payment/    - Record a payment
    - GET  /billings/{id}/payments/   - Payment log
    - POST /billings/{id}/correction/ - Negative correction (Finance)
    - POST /billings/{id}/cancel/     - Cancel (Finance)
    - POST /billings/{id}/dispute/    - Dispute (Finance)
    - POST /billings/{id}/refund/     - Full refund (Finance)
    """
    serializer_class = BillingRecordSerializer
    permission_classes = [IsBillingStaff]

    FINANCE_ACTIONS = {'correction', 'cancel', 'dispute', 'refund'}

    def get_permissions(self):
        if self.action in self.FINANCE_ACTIONS:
            return [IsFinanceOrAdmin()]
        return super().get_permissions()

    def _billing_response(self, billing_id, status_code=status.HTTP_200_OK):
        billing = services.get_billing(billing_id)
        return Response(BillingRecordSerializer(billing).data, status=status_code)

    def list(self, request):
        """
        GET /billings/?date_from&date_to&billing_type&status&doctor&patient
        """
        query = BillingListQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        params = query.validated_data

        try:
            billings = services.list_billings(
                date_from=params.get('date_from'),
                date_to=params.get('date_to'),
                billing_type=params.get('billing_type'),
                status=params.get('status'),
                doctor_ref=params.get('doctor'),
                patient_ref=params.get('patient'),
            )
        except LedgerError as e:
            return ledger_error_response(e, 'list_billings')

        page = self.paginate_queryset(billings)
        if page is not None:
            return self.get_paginated_response(BillingRecordSerializer(page, many=True).data)
        return Response(BillingRecordSerializer(billings, many=True).data)

    def create(self, request):
        """
        POST /billings/
        {
            "patient_ref": "PAT-1", "doctor_ref": "DOC-1", "billing_type": "private",
            "due_date": "2026-11-17",
            "items": [{"item_type": "consultation", "item_name": "Consulta", "quantity": 1, "unit_price": 15000}]
        }

        Returns:
        - 201: Billing record created
        - 400: Invalid items, amounts or dates
        - 409: billing_date inside a paid payout period of the doctor
        """
        serializer = BillingCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            billing = services.create_billing(
                patient_ref=data['patient_ref'],
                doctor_ref=data['doctor_ref'],
                billing_type=data['billing_type'],
                items=[dict(item) for item in data['items']],
                due_date=data['due_date'],
                discount_amount=data['discount_amount'],
                tax_amount=data['tax_amount'],
                insurance_company=data.get('insurance_company'),
                insurance_number=data.get('insurance_number'),
                billing_date=data.get('billing_date'),
                notes=data.get('notes', ''),
                created_by=request.user,
            )
        except LedgerError as e:
            return ledger_error_response(e, 'create_billing')

        return self._billing_response(billing.id, status.HTTP_201_CREATED)

    def retrieve(self, request, pk=None):
        try:
            return self._billing_response(pk)
        except LedgerError as e:
            return ledger_error_response(e, 'get_billing', billing_id=str(pk))

    @action(detail=True, methods=['post'], url_path='payment')
    def payment(self, request, pk=None):
        """
        Record a payment.

        POST /billings/{id}/payment/
        {"amount": 10000, "method": "pix", "payment_date": "2026-10-18"}

        Returns:
        - 201: {"payment": {...}, "billing": {...}, "warning": null | {"error_type": "overpayment", ...}}
        - 400: invalid_amount / validation_error
        - 404: Billing not found
        - 409: closed_billing
        """
        serializer = PaymentCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            result = services.add_payment(
                pk,
                amount=data['amount'],
                method=data['method'],
                payment_date=data.get('payment_date'),
                transaction_id=data.get('transaction_id'),
                bank_name=data.get('bank_name'),
                account_number=data.get('account_number'),
                check_number=data.get('check_number'),
                notes=data.get('notes', ''),
                user=request.user,
            )
            billing = services.get_billing(pk)
        except LedgerError as e:
            return ledger_error_response(e, 'add_payment', billing_id=str(pk))

        return Response(
            {
                'payment': PaymentSerializer(result.payment).data,
                'billing': BillingRecordSerializer(billing).data,
                'warning': result.warning.to_dict() if result.has_warning else None,
            },
            status=status.HTTP_201_CREATED
        )

    @action(detail=True, methods=['get'], url_path='payments')
    def payments(self, request, pk=None):
        """GET /billings/{id}/payments/ - payment log in insertion order."""
        try:
            entries = services.list_payments(pk)
        except LedgerError as e:
            return ledger_error_response(e, 'list_payments', billing_id=str(pk))
        return Response(PaymentSerializer(entries, many=True).data)

    @action(detail=True, methods=['post'], url_path='correction')
    def correction(self, request, pk=None):
        """
        POST /billings/{id}/correction/
        {"amount": -5000, "reason": "Duplicate card capture"}
        """
        serializer = CorrectionCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            entry = services.add_correction(
                pk,
                amount=data['amount'],
                reason=data['reason'],
                payment_date=data.get('payment_date'),
                user=request.user,
            )
            billing = services.get_billing(pk)
        except LedgerError as e:
            return ledger_error_response(e, 'add_correction', billing_id=str(pk))

        return Response(
            {
                'payment': PaymentSerializer(entry).data,
                'billing': BillingRecordSerializer(billing).data,
            },
            status=status.HTTP_201_CREATED
        )

    def _status_command(self, request, pk, command, serializer_class=StatusCommandSerializer):
        serializer = serializer_class(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            command(pk, user=request.user, **serializer.validated_data)
            return self._billing_response(pk)
        except LedgerError as e:
            return ledger_error_response(e, command.__name__, billing_id=str(pk))

    @action(detail=True, methods=['post'], url_path='cancel')
    def cancel(self, request, pk=None):
        """
        POST /billings/{id}/cancel/  {"reason": "..."}

        Returns:
        - 200: Cancelled (or already cancelled)
        - 409: conflict - money applied or status not pending/overdue
        """
        return self._status_command(request, pk, services.cancel_billing)

    @action(detail=True, methods=['post'], url_path='dispute')
    def dispute(self, request, pk=None):
        return self._status_command(request, pk, services.dispute_billing)

    @action(detail=True, methods=['post'], url_path='refund')
    def refund(self, request, pk=None):
        """POST /billings/{id}/refund/  {"reason": "...", "method": "pix"}"""
        return self._status_command(request, pk, services.refund_billing, RefundSerializer)


class ReceivablesViewSet(viewsets.ViewSet):
    """
    Accounts receivable reports.

    - GET /receivables/aging/?as_of=YYYY-MM-DD
    - GET /receivables/summary/?as_of=YYYY-MM-DD
    """
    permission_classes = [IsBillingStaff]

    def _as_of(self, request):
        query = AsOfQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        return query.validated_data.get('as_of')

    @action(detail=False, methods=['get'], url_path='aging')
    def aging(self, request):
        rows = build_aging_report(self._as_of(request))
        return Response(AccountsReceivableSerializer(rows, many=True).data)

    @action(detail=False, methods=['get'], url_path='summary')
    def summary(self, request):
        as_of = self._as_of(request) or timezone.localdate()
        summary = summarize_aging(build_aging_report(as_of))
        summary['as_of'] = as_of
        return Response(AgingSummarySerializer(summary).data)


class PhysicianPayoutViewSet(viewsets.GenericViewSet):
    """
    Physician payouts (Finance; Accounting may read).

    Additional endpoints:
    - POST /payouts/calculate/      - Calculate or recalculate a period
    - POST /payouts/{id}/mark-paid/ - Mark paid (exactly once)
    """
    serializer_class = PhysicianPayoutSerializer
    permission_classes = [IsFinanceOrAdmin]

    def list(self, request):
        query = PayoutListQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        is_paid = query.validated_data.get('is_paid')

        payout_list = payouts.list_payouts(
            doctor_ref=query.validated_data.get('doctor'),
            is_paid=None if is_paid is None else is_paid == 'true',
        )

        page = self.paginate_queryset(payout_list)
        if page is not None:
            return self.get_paginated_response(PhysicianPayoutSerializer(page, many=True).data)
        return Response(PhysicianPayoutSerializer(payout_list, many=True).data)

    def retrieve(self, request, pk=None):
        try:
            payout = payouts.get_payout(pk)
        except LedgerError as e:
            return ledger_error_response(e, 'get_payout', payout_id=str(pk))
        return Response(PhysicianPayoutSerializer(payout).data)

    @action(detail=False, methods=['post'], url_path='calculate')
    def calculate(self, request):
        """
        POST /payouts/calculate/
        {
            "doctor_ref": "DOC-1",
            "period_start": "2026-10-01",
            "period_end": "2026-10-31",
            "fee_policy": {"type": "flat", "amount": 2000}   // optional
        }

        Returns:
        - 201: Payout calculated (or recalculated in place)
        - 400: range_error / validation_error
        - 409: already_paid (payout_number) / conflict
        - 422: payout_error (reason: negative_net_payout)
        """
        serializer = PayoutCalculateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        fee_policy = data.get('fee_policy')

        try:
            payout = payouts.calculate_payout(
                data['doctor_ref'],
                data['period_start'],
                data['period_end'],
                fee_policy=dict(fee_policy) if fee_policy else None,
                user=request.user,
            )
        except LedgerError as e:
            return ledger_error_response(e, 'calculate_payout', doctor_ref=data['doctor_ref'])

        return Response(PhysicianPayoutSerializer(payout).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=['post'], url_path='mark-paid')
    def mark_paid(self, request, pk=None):
        serializer = MarkPayoutPaidSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            payout = payouts.mark_payout_paid(
                pk,
                payment_date=serializer.validated_data.get('payment_date'),
                user=request.user,
            )
        except LedgerError as e:
            return ledger_error_response(e, 'mark_payout_paid', payout_id=str(pk))

        return Response(PhysicianPayoutSerializer(payout).data)


class DashboardView(APIView):
    """
    GET /dashboard/?date_from=YYYY-MM-DD&date_to=YYYY-MM-DD[&as_of=YYYY-MM-DD]

    Returns:
    - 200: Revenue summary
    - 400: range_error
    - 503: dependency_error (expense ledger unavailable after one retry)
    """
    permission_classes = [IsBillingStaff]

    def get(self, request):
        query = DashboardQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        params = query.validated_data

        try:
            summary = dashboard.get_dashboard(
                params['date_from'],
                params['date_to'],
                as_of=params.get('as_of'),
            )
        except LedgerError as e:
            return ledger_error_response(e, 'get_dashboard')

        return Response(DashboardSerializer(summary).data)


class RevenueExpenseChartView(APIView):
    """
    GET /dashboard/revenue-expense-chart/?date_from=YYYY-MM-DD&date_to=YYYY-MM-DD

    Returns:
    - 200: monthly_data [{month, revenue, expenses, net_profit}, ...]
    - 400: range_error, or a range longer than the chart allows
    - 503: dependency_error
    """
    permission_classes = [IsBillingStaff]

    def get(self, request):
        query = ChartQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        params = query.validated_data

        try:
            chart = dashboard.get_revenue_expense_chart(params['date_from'], params['date_to'])
        except LedgerError as e:
            return ledger_error_response(e, 'get_revenue_expense_chart')

        return Response(RevenueExpenseChartSerializer(chart).data)
