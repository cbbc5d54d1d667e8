"""
In-memory Transactional Key-Value Store

A key-value store (string keys, integer values) with a single, non-nested
transaction layer. Writes are staged in a transaction buffer and only become
visible to readers once the transaction is committed.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterator, Mapping, Optional
from enum import Enum
from abc import ABC, abstractmethod
from contextlib import contextmanager
from functools import wraps
import logging
import threading

logger = logging.getLogger(__name__)


class TxnState(Enum):
    """Store transaction states"""
    IDLE = "idle"
    IN_TRANSACTION = "in_transaction"


@dataclass
class Transaction:
    """
    Represents the single active transaction of a store.

    Attributes:
        id: Transaction ID, increasing per store
        buffer: Staged writes, key -> new value
        undo_log: Committed value of each touched key before the transaction
            (None if the key did not exist)
    """
    id: int
    buffer: Dict[str, int] = field(default_factory=dict)
    undo_log: Dict[str, Optional[int]] = field(default_factory=dict)


@dataclass(frozen=True)
class TransactionView:
    """Read-only view of the active transaction handed out to callers"""
    id: int
    buffer: Mapping[str, int]
    undo_log: Mapping[str, Optional[int]]

    @classmethod
    def of(cls, txn: Transaction) -> "TransactionView":
        return cls(
            id=txn.id,
            buffer=MappingProxyType(txn.buffer),
            undo_log=MappingProxyType(txn.undo_log),
        )


# Custom Exceptions
class StoreError(Exception):
    """Base class for store errors"""
    pass


class InvalidStateError(StoreError):
    """
    Raised when an operation's transaction precondition is violated.

    The ``operation`` attribute names the call that failed.
    """

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"{operation}: {reason}")


NO_ACTIVE_TRANSACTION = "no active transaction"
TRANSACTION_IN_PROGRESS = "transaction already in progress"


def _check_value(key: str, value: object) -> None:
    # None is reserved for "absent" in the undo log
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"value for {key!r} must be int, got {type(value).__name__}")


class KVStore(ABC):
    """Abstract base class for key-value store"""

    @abstractmethod
    def get(self, key: str) -> Optional[int]:
        """Get committed value for key"""
        pass

    @abstractmethod
    def put(self, key: str, value: int) -> None:
        """Stage key-value pair in the active transaction"""
        pass

    @abstractmethod
    def begin_transaction(self) -> None:
        """Start a transaction"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit the active transaction"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Rollback the active transaction"""
        pass


def _synchronized(method):
    """Run a store method under the instance lock when one is configured."""

    @wraps(method)
    def wrapper(self, *args, **kwargs):
        if self._lock is None:
            return method(self, *args, **kwargs)
        with self._lock:
            return method(self, *args, **kwargs)

    return wrapper


class TransactionalStore(KVStore):
    """
    Key-value store with one transaction at a time.

    This implementation provides:
    - Reads that only ever see committed data
    - Writes staged in a per-transaction buffer
    - An undo log recording each key's pre-transaction value on first touch
    - Commit applies the buffer, rollback replays the undo log
    """

    def __init__(
        self,
        initial_data: Optional[Mapping[str, int]] = None,
        thread_safe: bool = False,
    ):
        """
        Initialize the store.

        Args:
            initial_data: Committed key-value pairs to start with (copied)
            thread_safe: Guard every operation with a per-instance lock
        """
        self.data: Dict[str, int] = dict(initial_data) if initial_data else {}  # committed store
        for key, value in self.data.items():
            _check_value(key, value)
        self._txn: Optional[Transaction] = None
        self._txn_counter = 0
        self._lock = threading.RLock() if thread_safe else None

    def _next_txn_id(self) -> int:
        """Generate next transaction ID"""
        self._txn_counter += 1
        return self._txn_counter

    def _require_active(self, operation: str) -> Transaction:
        """Return the active transaction or raise InvalidStateError"""
        if self._txn is None:
            logger.warning("%s rejected: %s", operation, NO_ACTIVE_TRANSACTION)
            raise InvalidStateError(operation, NO_ACTIVE_TRANSACTION)
        return self._txn

    @property
    def state(self) -> TxnState:
        return TxnState.IDLE if self._txn is None else TxnState.IN_TRANSACTION

    @property
    def in_transaction(self) -> bool:
        return self._txn is not None

    @property
    def current_transaction(self) -> Optional[TransactionView]:
        return None if self._txn is None else TransactionView.of(self._txn)

    @_synchronized
    def get(self, key: str) -> Optional[int]:
        """Get committed value for key, None if absent"""
        # Staged writes are never consulted
        return self.data.get(key)

    @_synchronized
    def put(self, key: str, value: int) -> None:
        """Stage key-value pair in the active transaction"""
        txn = self._require_active("put")
        _check_value(key, value)

        # First touch records the committed value for rollback
        if key not in txn.undo_log:
            txn.undo_log[key] = self.data.get(key)

        txn.buffer[key] = value
        logger.debug("Transaction %d staged %r=%r", txn.id, key, value)

    def begin_transaction(self) -> None:
        """Start a transaction"""
        self._start()

    @_synchronized
    def _start(self) -> Transaction:
        if self._txn is not None:
            logger.warning("begin_transaction rejected: %s", TRANSACTION_IN_PROGRESS)
            raise InvalidStateError("begin_transaction", TRANSACTION_IN_PROGRESS)

        self._txn = Transaction(id=self._next_txn_id())
        logger.info("Transaction %d started", self._txn.id)
        return self._txn

    @_synchronized
    def commit(self) -> None:
        """Apply staged writes to the committed store"""
        txn = self._require_active("commit")

        for key, value in txn.buffer.items():
            self.data[key] = value

        self._txn = None
        logger.info("Transaction %d committed (%d keys)", txn.id, len(txn.buffer))

    @_synchronized
    def rollback(self) -> None:
        """Restore every touched key to its pre-transaction value"""
        txn = self._require_active("rollback")

        for key, previous in txn.undo_log.items():
            if previous is None:
                self.data.pop(key, None)
            else:
                self.data[key] = previous

        self._txn = None
        logger.info("Transaction %d rolled back (%d keys)", txn.id, len(txn.undo_log))

    @_synchronized
    def _rollback_if_current(self, txn: Transaction) -> None:
        # The block may already have ended the transaction itself
        if self._txn is txn:
            self.rollback()

    @contextmanager
    def transaction(self) -> Iterator[TransactionView]:
        """
        Run a block inside a transaction.

        Commits on a clean exit; rolls back and re-raises if the block raises,
        is interrupted, or its enclosing generator is closed.
        """
        txn = self._start()
        try:
            yield TransactionView.of(txn)
        except BaseException:
            self._rollback_if_current(txn)
            raise
        self.commit()

    @_synchronized
    def snapshot(self) -> Dict[str, int]:
        """Copy of the committed store"""
        return dict(self.data)

    def __len__(self) -> int:
        return len(self.data)

    def __contains__(self, key: object) -> bool:
        return key in self.data
