"""Purchase request lifecycle: pending until a parent approves, rejects or the child cancels."""

from __future__ import annotations

from typing import List, Optional

from .clock import Clock
from .exceptions import InsufficientFundsError, RequestNotFoundError, ValidationError
from .ledger import LedgerStore
from .models import EntryType, LedgerEntry, PurchaseRequest, RequestStatus, ResolveAction
from .money import ZERO, AmountLike
from .storage import UnitOfWork


class PurchaseRequestMachine:
    """Only an approval moves money, and it does so in the same unit of work as the status flip."""

    __slots__ = ("_ledger", "_clock", "_allow_overdraft")

    def __init__(self, ledger: LedgerStore, *, clock: Clock, allow_overdraft: bool = False) -> None:
        self._ledger = ledger
        self._clock = clock
        self._allow_overdraft = allow_overdraft

    def submit(
        self,
        uow: UnitOfWork,
        account_id: str,
        amount: AmountLike,
        description: str,
        *,
        category: Optional[str] = None,
    ) -> PurchaseRequest:
        request = PurchaseRequest(
            account_id=account_id,
            amount=amount,
            description=(description or "").strip(),
            category=category,
            created_at=self._clock.now(),
        )
        self._ledger.load_account(uow, account_id)
        uow.save_request(request)
        return request

    def get(self, uow: UnitOfWork, request_id: str) -> PurchaseRequest:
        request = uow.get_request(request_id)
        if request is None:
            raise RequestNotFoundError(f"Purchase request '{request_id}' does not exist.")
        return request

    def resolve(
        self,
        uow: UnitOfWork,
        request_id: str,
        action: ResolveAction | str,
        resolver_id: str,
        *,
        reason: Optional[str] = None,
    ) -> tuple[PurchaseRequest, Optional[LedgerEntry]]:
        try:
            action = ResolveAction(action)
        except ValueError as exc:
            raise ValidationError(f"Unsupported action: {action!r}") from exc
        if not (resolver_id or "").strip():
            raise ValidationError("resolver_id is required.")
        request = self.get(uow, request_id)
        request.ensure_pending()
        now = self._clock.now()
        if action is ResolveAction.REJECT:
            request.reject(resolver_id, reason=reason, when=now)
            uow.save_request(request)
            return request, None

        account = self._ledger.load_account(uow, request.account_id)
        if not self._allow_overdraft and account.balance - request.amount < ZERO:
            raise InsufficientFundsError(
                f"Approving {request.amount} would overdraw account '{account.account_id}' "
                f"(balance {account.balance})."
            )
        entry = self._ledger.post(
            uow,
            account,
            -request.amount,
            EntryType.REQUEST_APPROVED,
            f"Purchase approved: {request.description}",
            category=request.category,
            request_id=request.request_id,
            actor_id=resolver_id,
        )
        request.approve(resolver_id, entry_id=entry.entry_id, when=now)
        uow.save_request(request)
        return request, entry

    def cancel(self, uow: UnitOfWork, request_id: str, requester_id: str) -> PurchaseRequest:
        request = self.get(uow, request_id)
        if requester_id != request.account_id:
            raise ValidationError("Only the requesting account can cancel a purchase request.")
        request.cancel(when=self._clock.now())
        uow.save_request(request)
        return request

    def pending(self, uow: UnitOfWork, account_id: Optional[str] = None) -> List[PurchaseRequest]:
        return uow.requests(account_id, status=RequestStatus.PENDING)


__all__ = ["PurchaseRequestMachine"]
