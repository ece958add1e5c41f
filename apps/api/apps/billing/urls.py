"""Billing URLs."""
from django.urls import include, path
from rest_framework.routers import DefaultRouter

from .views import (
    BillingRecordViewSet,
    DashboardView,
    PhysicianPayoutViewSet,
    ReceivablesViewSet,
    RevenueExpenseChartView,
)

router = DefaultRouter()
router.register(r'billings', BillingRecordViewSet, basename='billing')
router.register(r'receivables', ReceivablesViewSet, basename='receivables')
router.register(r'payouts', PhysicianPayoutViewSet, basename='payout')

urlpatterns = [
    path('dashboard/', DashboardView.as_view(), name='billing-dashboard'),
    path(
        'dashboard/revenue-expense-chart/',
        RevenueExpenseChartView.as_view(),
        name='billing-revenue-expense-chart',
    ),
    path('', include(router.urls)),
]
