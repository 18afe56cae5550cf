"""
Request dependencies
"""

from fastapi import Request

from ..system import AccountingSystem


def get_accounting_system(request: Request) -> AccountingSystem:
    """Accounting system the application was created with"""
    return request.app.state.accounting_system
