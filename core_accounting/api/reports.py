"""
Reporting endpoints
"""

from fastapi import APIRouter, Depends

from .dependencies import get_accounting_system
from .schemas import (
    serialize_trial_balance, serialize_balance_sheet, serialize_income_statement,
    serialize_inventory_identity, serialize_iva_position
)
from ..system import AccountingSystem


router = APIRouter()


@router.get("/trial-balance")
async def trial_balance(system: AccountingSystem = Depends(get_accounting_system)):
    return serialize_trial_balance(system.balance_validator.compute_trial_balance())


@router.get("/balance-sheet")
async def balance_sheet(system: AccountingSystem = Depends(get_accounting_system)):
    return serialize_balance_sheet(system.balance_validator.compute_balance_sheet())


@router.get("/income-statement")
async def income_statement(system: AccountingSystem = Depends(get_accounting_system)):
    return serialize_income_statement(system.balance_validator.compute_income_statement())


@router.get("/inventory-identity")
async def inventory_identity(system: AccountingSystem = Depends(get_accounting_system)):
    return serialize_inventory_identity(system.balance_validator.check_inventory_identity())


@router.get("/iva-position")
async def iva_position(system: AccountingSystem = Depends(get_accounting_system)):
    return serialize_iva_position(system.balance_validator.compute_iva_position())
