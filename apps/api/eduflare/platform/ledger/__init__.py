from eduflare.platform.ledger.models import Commission, Invoice, StaffCommissionRate
from eduflare.platform.ledger.schemas import (
    CommissionRead,
    InvoiceRead,
    NetRevenueLine,
    NetRevenueRead,
    StaffCommissionRateRead,
    StaffCommissionRateSet,
)
from eduflare.platform.ledger.service import LedgerService, ledger_service

__all__ = [
    "Invoice",
    "Commission",
    "StaffCommissionRate",
    "InvoiceRead",
    "CommissionRead",
    "NetRevenueLine",
    "NetRevenueRead",
    "StaffCommissionRateRead",
    "StaffCommissionRateSet",
    "LedgerService",
    "ledger_service",
]
