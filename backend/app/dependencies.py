"""
Dependencies
Services built at startup, exposed to routers
"""

from fastapi import Request

from app.services import JobJournal, TrustReconciler


def get_reconciler(request: Request) -> TrustReconciler:
    return request.app.state.reconciler


def get_journal(request: Request) -> JobJournal:
    return request.app.state.journal
