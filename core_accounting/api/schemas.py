"""
Pydantic schemas for API requests and response serializers
"""

from datetime import date
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from ..ledger import AccountLine, JournalEntry
from ..inventory import InventoryItem, InventoryMovement
from ..invoices import Invoice, InvoiceLine
from ..reporting import BalanceSheet, IncomeStatement, InventoryIdentity, IvaPosition, TrialBalance


# Journal schemas
class AccountLineModel(BaseModel):
    account_code: str
    debit: str = Field("0", description="Decimal amount as string")
    credit: str = Field("0", description="Decimal amount as string")
    description: str = ""

    def to_line(self) -> AccountLine:
        return AccountLine(
            account_code=self.account_code,
            debit=self.debit,
            credit=self.credit,
            description=self.description
        )


class CreateJournalEntryRequest(BaseModel):
    memo: str
    lines: List[AccountLineModel]
    entry_date: Optional[date] = None
    reference_id: Optional[str] = None


class VoidEntryRequest(BaseModel):
    reason: str = ""


# Inventory schemas
class CreateItemRequest(BaseModel):
    code: str
    name: str
    sale_price: str = Field(..., description="Tax-inclusive price as string")
    min_threshold: str = "0"
    max_threshold: str = "0"


class InboundRequest(BaseModel):
    quantity: str
    unit_cost: str
    reason_code: str = Field("purchase", description="purchase, return_in or manual_adjustment")
    document_ref: str = ""
    movement_date: Optional[date] = None


class PurchaseRequest(BaseModel):
    quantity: str
    unit_price: str = Field(..., description="IVA-inclusive unit price as string")
    document_ref: str = ""
    movement_date: Optional[date] = None


class OutboundRequest(BaseModel):
    quantity: str
    reason_code: str = Field("sale", description="sale, loss, return_out or manual_adjustment")
    document_ref: str = ""
    movement_date: Optional[date] = None


class AdjustmentRequest(BaseModel):
    delta: str = Field(..., description="Signed quantity correction")
    reason_code: str = "manual_adjustment"
    document_ref: str = ""
    movement_date: Optional[date] = None


# Invoice schemas
class InvoiceLineModel(BaseModel):
    item_id: str
    quantity: str
    unit_price: str = Field(..., description="Tax-inclusive unit price as string")
    discount: str = "0"

    def to_line(self) -> InvoiceLine:
        return InvoiceLine(
            item_id=self.item_id,
            quantity=self.quantity,
            unit_price=self.unit_price,
            discount=self.discount
        )


class CreateInvoiceRequest(BaseModel):
    client: str
    lines: List[InvoiceLineModel]
    number: Optional[str] = None
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None


class SubmitInvoiceRequest(BaseModel):
    timeout: Optional[float] = Field(None, description="Seconds to wait for the tax authority")


class PayInvoiceRequest(BaseModel):
    cash_account: Optional[str] = None
    payment_date: Optional[date] = None


class VoidInvoiceRequest(BaseModel):
    reason: str = ""


# Serializers
def serialize_entry(entry: JournalEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "number": entry.number,
        "entry_date": entry.entry_date.isoformat(),
        "memo": entry.memo,
        "status": entry.status.value,
        "origin": entry.origin.value,
        "reference_id": entry.reference_id,
        "source_id": entry.source_id,
        "posted_at": entry.posted_at.isoformat() if entry.posted_at else None,
        "voided_by": entry.voided_by,
        "total_debits": str(entry.total_debits),
        "total_credits": str(entry.total_credits),
        "lines": [line.to_dict() for line in entry.lines]
    }


def serialize_item(item: InventoryItem) -> Dict[str, Any]:
    return {
        "id": item.id,
        "code": item.code,
        "name": item.name,
        "sale_price": str(item.sale_price),
        "quantity_on_hand": str(item.quantity_on_hand),
        "weighted_average_cost": str(item.weighted_average_cost),
        "book_value": str(item.book_value),
        "min_threshold": str(item.min_threshold),
        "max_threshold": str(item.max_threshold),
        "stock_status": item.stock_status.value
    }


def serialize_movement(movement: InventoryMovement, entry: Optional[JournalEntry] = None) -> Dict[str, Any]:
    result = movement.to_dict()
    if entry is not None:
        result["entry_number"] = entry.number
    return result


def serialize_invoice(invoice: Invoice) -> Dict[str, Any]:
    result = invoice.to_dict()
    result["state"] = invoice.state_label
    return result


def serialize_trial_balance(trial_balance: TrialBalance) -> Dict[str, Any]:
    return {
        "lines": [
            {
                "account_code": line.account_code,
                "account_name": line.account_name,
                "kind": line.kind.value,
                "debit_total": str(line.debit_total),
                "credit_total": str(line.credit_total),
                "balance": str(line.balance)
            }
            for line in trial_balance.lines.values()
        ],
        "total_debits": str(trial_balance.total_debits),
        "total_credits": str(trial_balance.total_credits),
        "is_balanced": trial_balance.is_balanced
    }


def serialize_balance_sheet(balance_sheet: BalanceSheet) -> Dict[str, Any]:
    return {
        "assets": str(balance_sheet.assets),
        "liabilities": str(balance_sheet.liabilities),
        "equity": str(balance_sheet.equity),
        "net_income": str(balance_sheet.net_income),
        "difference": str(balance_sheet.difference),
        "is_balanced": balance_sheet.is_balanced
    }


def serialize_income_statement(statement: IncomeStatement) -> Dict[str, Any]:
    return {
        "revenue": str(statement.revenue),
        "cost_of_goods_sold": str(statement.cost_of_goods_sold),
        "gross_margin": str(statement.gross_margin),
        "operating_expenses": str(statement.operating_expenses),
        "net_income": str(statement.net_income)
    }


def serialize_inventory_identity(identity: InventoryIdentity) -> Dict[str, Any]:
    return {
        "inbound_value": str(identity.inbound_value),
        "outbound_value": str(identity.outbound_value),
        "expected_ending": str(identity.expected_ending),
        "ledger_balance": str(identity.ledger_balance),
        "book_value": str(identity.book_value),
        "holds": identity.holds
    }


def serialize_iva_position(position: IvaPosition) -> Dict[str, Any]:
    return {
        "output_tax": str(position.output_tax),
        "input_tax": str(position.input_tax),
        "net_payable": str(position.net_payable),
        "is_carryforward": position.is_carryforward
    }
