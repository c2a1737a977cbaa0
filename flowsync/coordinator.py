from __future__ import annotations

import logging
import time
from typing import Callable

from flowsync.applier import OperationApplier
from flowsync.db import DATABASE_ERRORS, DBConn
from flowsync.errors import (
    ApplyError,
    BatchTimeoutError,
    BatchTransactionError,
    DuplicateKeyError,
    NotFoundError,
    ValidationError,
)
from flowsync.ledger import IdempotencyLedger
from flowsync.operations import BatchResult, Operation, validated

logger = logging.getLogger(__name__)

OPERATION_ERRORS = (ValidationError, NotFoundError, ApplyError)


class BatchCoordinator:
    """Applies an ordered batch of client operations in one transaction.

    Every operation gets exactly one result, in submission order. An
    operation that fails is rolled back to its own savepoint and reported;
    the rest of the batch carries on. Only failures of the transaction
    itself escape, as BatchTransactionError.
    """

    def __init__(
        self,
        connect: Callable[[], DBConn],
        timeout: float | None = None,
        ledger_factory: Callable[[DBConn], IdempotencyLedger] = IdempotencyLedger,
        applier_factory: Callable[[DBConn], OperationApplier] = OperationApplier,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.connect = connect
        self.timeout = timeout
        self.ledger_factory = ledger_factory
        self.applier_factory = applier_factory
        self.clock = clock

    def process_batch(self, operations: list[Operation], user_id: int) -> list[BatchResult]:
        results: list[BatchResult] = []
        deadline = self.clock() + self.timeout if self.timeout else None
        logger.info("Processing batch of %s operations for user %s", len(operations), user_id)
        try:
            with self.connect() as conn:
                conn.begin(self.timeout)
                ledger = self.ledger_factory(conn)
                applier = self.applier_factory(conn)
                for index, op in enumerate(operations):
                    if deadline is not None and self.clock() > deadline:
                        raise BatchTimeoutError(
                            f"Batch timed out after {index} of {len(operations)} operations",
                            results,
                        )
                    results.append(self._process_one(conn, ledger, applier, op, user_id, index))
        except BatchTimeoutError:
            logger.error("Batch for user %s rolled back after timeout", user_id)
            raise
        except DATABASE_ERRORS as exc:
            logger.exception("Batch for user %s failed", user_id)
            raise BatchTransactionError(str(exc), results) from exc
        return results

    def _process_one(
        self,
        conn: DBConn,
        ledger: IdempotencyLedger,
        applier: OperationApplier,
        op: Operation,
        user_id: int,
        index: int,
    ) -> BatchResult:
        entry = ledger.lookup(user_id, op.idempotency_key)
        if entry is not None:
            logger.info("Operation %s already processed", op.idempotency_key)
            return {"tempId": op.temp_id, "serverId": entry.server_id, "status": "duplicate"}

        try:
            with conn.savepoint(f"sync_op_{index}"):
                ref = applier.apply(validated(op), user_id)
                ledger.record(
                    user_id,
                    op.idempotency_key,
                    op.op_type.value,
                    op.payload,
                    ref.as_response(),
                )
        except DuplicateKeyError:
            entry = ledger.lookup(user_id, op.idempotency_key)
            if entry is None:
                message = f"Idempotency key {op.idempotency_key} is held by an unfinished request"
                return {"tempId": op.temp_id, "serverId": None, "status": "error", "error": message}
            logger.info("Lost idempotency race on %s, returning recorded result", op.idempotency_key)
            return {"tempId": op.temp_id, "serverId": entry.server_id, "status": "duplicate"}
        except OPERATION_ERRORS as exc:
            logger.warning("Operation %s (%s) failed: %s", op.idempotency_key, op.op_type.value, exc)
            return {"tempId": op.temp_id, "serverId": None, "status": "error", "error": str(exc)}

        return {"tempId": op.temp_id, "serverId": ref.id, "status": "success"}
