"""Loan lifecycle: checkout, return and reverting a return.

A loan moves ``activo -> devuelto | vencido`` when a Return is registered
for it and back to ``activo`` when that Return is deleted. The Loan status
and the presence of its Return always change as a pair, and this module is
the only writer of ``Loan.status``.

The backend offers no transaction spanning both records, so each transition
is a two-phase update:

* registering a return creates the Return first and then updates the Loan;
  if the Loan update fails the Return is deleted again;
* deleting a return removes the Return first and then reverts the Loan; the
  revert is retried, and if it still fails the change is queued in the local
  store for ``repair_pending()``.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from config import Settings, settings as default_settings
from biblioteca.database import PENDING_REPAIRS_KEY, LocalStore
from biblioteca.errors import LibraryError, RequestFailed
from biblioteca.models import (
    BookCondition, Identity, Loan, LoanStatus, Return, ReturnStatus, as_date, ref_id,
)
from biblioteca.services.gateways import LoanGateway, ReturnGateway
from biblioteca.validators import ReferenceValidator

logger = logging.getLogger(__name__)

DateLike = Union[datetime, None]

STATUS_FIELDS = ("estado", "status")

TERMINAL_FOR_RETURN = {
    ReturnStatus.ON_TIME: LoanStatus.RETURNED,
    ReturnStatus.LATE: LoanStatus.OVERDUE,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: DateLike) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _in_zone_of(value: DateLike, reference: DateLike) -> DateLike:
    """Express value in the timezone of reference so their calendar days compare.

    Naive datetimes are local wall-clock times.
    """
    if value is None or reference is None or value.tzinfo is None:
        return value
    if reference.tzinfo is None:
        return value.astimezone().replace(tzinfo=None)
    return value.astimezone(reference.tzinfo)


def compute_return_status(returned_on: DateLike, expected_on: DateLike) -> ReturnStatus:
    """on_time when returned on or before the expected day, late otherwise.

    The day is the one of the deadline's timezone.
    """
    returned_day = as_date(_in_zone_of(returned_on, expected_on))
    expected_day = as_date(expected_on)
    if returned_day is None or expected_day is None:
        return ReturnStatus.ON_TIME
    return ReturnStatus.ON_TIME if returned_day <= expected_day else ReturnStatus.LATE


def resolve_loan_status(return_status: ReturnStatus,
                        requested: Union[LoanStatus, str, None] = None) -> LoanStatus:
    """Terminal loan status: the operator's choice if given, else derived from the return."""
    derived = TERMINAL_FOR_RETURN[return_status]
    if requested is None:
        return derived
    chosen = LoanStatus(requested)
    if chosen == LoanStatus.ACTIVE:
        raise ValueError("A returned loan cannot stay active")
    if chosen != derived:
        logger.warning(f"Loan status '{chosen.value}' overrides computed '{derived.value}'")
    return chosen


class LoanManager:
    def __init__(self, loans: LoanGateway, returns: ReturnGateway, store: LocalStore,
                 settings: Settings = default_settings):
        self.loans = loans
        self.returns = returns
        self.store = store
        self.settings = settings

    # ------------------------- Loans ------------------------- #
    async def get_loan(self, loan_id: str) -> Loan:
        return Loan.model_validate(await self.loans.get(loan_id))

    async def list_loans(self, active_only: bool = False, borrower: Optional[Identity] = None) -> List[Loan]:
        loans = self._parse_all(Loan, await self.loans.list())
        if active_only:
            loans = [loan for loan in loans if loan.is_active]
        if borrower is not None:
            loans = [loan for loan in loans if self._belongs_to(loan, borrower)]
        return loans

    async def loans_for(self, identity: Identity) -> List[Loan]:
        """The "my loans" view of a standard user."""
        return await self.list_loans(borrower=identity)

    async def create_loan(self, borrower_id: str, book_id: str, loan_date: DateLike = None,
                          due_date: DateLike = None) -> Loan:
        if not ReferenceValidator.is_present(borrower_id):
            raise ValueError("A borrower must be selected")
        if not ReferenceValidator.is_present(book_id):
            raise ValueError("A book must be selected")

        payload = {
            "usuario": borrower_id,
            "libro": book_id,
            "fechaPrestamo": _iso(loan_date or _now()),
            "fechaDevolucion": _iso(due_date),
            "estado": LoanStatus.ACTIVE.value,
        }
        created = await self.loans.create(payload)
        loan = Loan.model_validate(created)
        logger.info(f"Loan {loan.id} created for borrower {borrower_id}")
        return loan

    async def update_loan(self, loan_id: str, fields: Dict[str, Any]) -> Loan:
        """Edit borrower, book or dates. Status changes only happen through returns."""
        changes = {k: v for k, v in fields.items() if k not in STATUS_FIELDS}
        if len(changes) != len(fields):
            logger.warning(f"Ignoring status change requested for loan {loan_id}")
        for key in ("fechaPrestamo", "fechaDevolucion"):
            if isinstance(changes.get(key), datetime):
                changes[key] = _iso(changes[key])
        updated = await self.loans.update(loan_id, changes)
        return Loan.model_validate(updated)

    async def delete_loan(self, loan_id: str) -> None:
        loan = await self.get_loan(loan_id)
        if not loan.is_active:
            raise ValueError("Loan has a registered return; delete the return first")
        await self.loans.delete(loan_id)
        logger.info(f"Loan {loan_id} deleted")

    # ------------------------- Returns ------------------------- #
    async def list_returns(self) -> List[Return]:
        return self._parse_all(Return, await self.returns.list())

    async def get_return(self, return_id: str) -> Return:
        return Return.model_validate(await self.returns.get(return_id))

    async def register_return(self, loan_id: str, returned_on: DateLike = None,
                              loan_status: Union[LoanStatus, str, None] = None,
                              condition: Union[BookCondition, str] = BookCondition.GOOD,
                              notes: str = "", fine: Optional[float] = None) -> Return:
        """Move an active loan to returned/overdue by registering its Return."""
        loan = await self.get_loan(loan_id)
        if not loan.is_active:
            raise ValueError(f"Loan {loan_id} is not active")

        returned_on = returned_on or _now()
        status = compute_return_status(returned_on, loan.return_date)
        terminal = resolve_loan_status(status, loan_status)

        payload = {
            "prestamo": loan.id,
            "usuario": loan.borrower_id,
            "libro": loan.book_id,
            "fechaDevolucionReal": _iso(returned_on),
            "fechaDevolucionEsperada": _iso(loan.return_date),
            "estado": status.value,
            "condicionLibro": BookCondition(condition).value,
            "observaciones": notes or "",
        }
        fine = self._fine_for(returned_on, loan.return_date) if fine is None else fine
        if fine is not None:
            payload["multa"] = fine

        response = await self.returns.create(payload)
        if not isinstance(response, dict):
            response = {}
        return_id = ref_id(response)
        if return_id is None:
            raise RequestFailed(f"Return for loan {loan.id} was created without an id")

        loan_changes = {"estado": terminal.value, "fechaDevolucion": _iso(returned_on)}
        try:
            created = Return.model_validate({**payload, **response})
            await self.loans.update(loan.id, loan_changes)
        except (LibraryError, ValidationError) as e:
            logger.error(f"Loan {loan.id} not updated after return {return_id} was created: {e}")
            await self._undo_return(return_id, loan.id, loan_changes)
            raise

        logger.info(f"Loan {loan.id} is now {terminal.value} (return {return_id}, {status.value})")
        return created

    async def update_return(self, return_id: str, fields: Dict[str, Any]) -> Return:
        """Edit a Return in place. The Loan is left untouched."""
        current = await self.get_return(return_id)
        changes = dict(fields)
        for key in ("fechaDevolucionReal", "fechaDevolucionEsperada"):
            if isinstance(changes.get(key), datetime):
                changes[key] = _iso(changes[key])

        merged = Return.model_validate({**current.to_wire(), **changes})
        changes["estado"] = compute_return_status(
            merged.actual_return_date, merged.expected_return_date
        ).value

        updated = await self.returns.update(return_id, changes)
        return Return.model_validate(updated)

    async def delete_return(self, return_id: str) -> Optional[str]:
        """Delete a Return and revert its loan to active.

        Returns the id of the reverted loan, or None when the Return
        referenced no loan.
        """
        record = await self.get_return(return_id)
        loan_id = record.loan_id

        try:
            await self.returns.delete(return_id)
        except RequestFailed as e:
            if e.status_code != 404:
                raise
            logger.warning(f"Return {return_id} was already gone; reverting loan anyway")

        if not loan_id:
            logger.error(f"Return {return_id} had no loan reference")
            return None

        revert = {"estado": LoanStatus.ACTIVE.value, "fechaDevolucion": None}
        await self._apply_with_retry(loan_id, revert)
        logger.info(f"Loan {loan_id} reverted to active")
        return loan_id

    # ------------------------- Repairs ------------------------- #
    def pending_repairs(self) -> List[Dict[str, Any]]:
        return [r for r in self.store.get_list(PENDING_REPAIRS_KEY) if isinstance(r, dict)]

    async def repair_pending(self) -> int:
        """Replay queued loan changes; returns how many were applied."""
        remaining = []
        applied = 0
        for repair in self.pending_repairs():
            try:
                await self.loans.update(repair["loan"], repair["changes"])
                applied += 1
            except LibraryError as e:
                logger.warning(f"Repair of loan {repair.get('loan')} still failing: {e}")
                remaining.append(repair)
            except KeyError:
                logger.error(f"Dropping malformed repair entry: {repair}")
        self.store.set(PENDING_REPAIRS_KEY, remaining)
        return applied

    def _queue_repair(self, loan_id: str, changes: Dict[str, Any], reason: str) -> None:
        queue = self.pending_repairs()
        queue = [r for r in queue if r.get("loan") != loan_id]
        queue.append({"loan": loan_id, "changes": changes, "reason": reason, "queuedAt": _iso(_now())})
        self.store.set(PENDING_REPAIRS_KEY, queue)
        logger.error(f"Queued repair for loan {loan_id}: {reason}")

    async def _apply_with_retry(self, loan_id: str, changes: Dict[str, Any]) -> None:
        attempts = 1 + max(0, self.settings.loan_repair_retries)
        for attempt in range(1, attempts + 1):
            try:
                await self.loans.update(loan_id, changes)
                return
            except LibraryError as e:
                logger.warning(f"Loan {loan_id} update attempt {attempt}/{attempts} failed: {e}")
                if attempt == attempts:
                    self._queue_repair(loan_id, changes, str(e))
                    raise

    async def _undo_return(self, return_id: str, loan_id: str, loan_changes: Dict[str, Any]) -> None:
        try:
            await self.returns.delete(return_id)
            logger.info(f"Return {return_id} removed after failed loan update")
        except LibraryError as e:
            # The Return stays; finish the loan side later instead
            logger.error(f"Could not remove return {return_id}: {e}")
            self._queue_repair(loan_id, loan_changes, str(e))

    # ------------------------- Helpers ------------------------- #
    def _fine_for(self, returned_on: DateLike, expected_on: DateLike) -> Optional[float]:
        if self.settings.fine_per_day <= 0:
            return None
        returned_day = as_date(_in_zone_of(returned_on, expected_on))
        expected_day = as_date(expected_on)
        if returned_day is None or expected_day is None or returned_day <= expected_day:
            return 0.0
        return round((returned_day - expected_day).days * self.settings.fine_per_day, 2)

    @staticmethod
    def _belongs_to(loan: Loan, identity: Identity) -> bool:
        if loan.borrower_id == identity.id:
            return True
        return isinstance(loan.borrower, dict) and loan.borrower.get("correo") == identity.email

    @staticmethod
    def _parse_all(model, records: List[Any]) -> List[Any]:
        parsed = []
        for record in records:
            try:
                parsed.append(model.model_validate(record))
            except ValidationError as e:
                logger.warning(f"Skipping malformed {model.__name__} record: {e.error_count()} error(s)")
        return parsed
