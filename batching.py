import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional, TypeVar

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from config import get_settings

logger = logging.getLogger(__name__)

MAX_OPS_PER_CHUNK = 500
BACKOFF_MAX_SECONDS = 10.0

T = TypeVar("T")


@dataclass
class WriteOp:
    """One unit of work applied inside a chunk; ``key`` identifies it in error reports."""

    key: str
    apply: Callable[[Session], None]


@dataclass
class ChunkError:
    chunk_index: int
    op_keys: list[str]
    error: str


@dataclass
class BatchResult:
    chunks_committed: int = 0
    total_ops: int = 0
    per_chunk_errors: list[ChunkError] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.per_chunk_errors

    def failed_keys(self) -> set[str]:
        return {key for err in self.per_chunk_errors for key in err.op_keys}


def with_retries(
    fn: Callable[[], T],
    *,
    attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``fn``, retrying transient store errors with exponential backoff."""
    settings = get_settings()
    attempts = settings.store_retry_attempts if attempts is None else attempts
    base_delay = settings.store_retry_base_secs if base_delay is None else base_delay
    for attempt in range(attempts):
        try:
            return fn()
        except OperationalError as exc:
            if attempt >= attempts - 1:
                raise
            backoff = min(BACKOFF_MAX_SECONDS, base_delay * (2**attempt))
            logger.warning(
                f"store_retry: attempt={attempt + 1}/{attempts} "
                f"backoff={backoff:.2f}s error={exc.orig!r}"
            )
            sleep(backoff)
    raise ValueError("attempts must be at least 1")


def _chunks(items: list[WriteOp], size: int) -> Iterable[list[WriteOp]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class BatchWriter:
    """Commit write operations in independent atomic chunks.

    Each chunk commits or rolls back as a whole; a failure in a later chunk
    never undoes an earlier one. The batch as a whole is therefore resumable
    rather than transactional: callers must build operations that can be
    replayed, and use ``per_chunk_errors`` to decide what to retry.
    """

    def __init__(
        self,
        session: Session,
        *,
        max_ops_per_chunk: Optional[int] = None,
        retry_attempts: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        size = max_ops_per_chunk or get_settings().batch_max_ops
        if size < 1 or size > MAX_OPS_PER_CHUNK:
            raise ValueError(
                f"Chunk size must be between 1 and {MAX_OPS_PER_CHUNK} operations"
            )
        self.session = session
        self.max_ops_per_chunk = size
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.sleep = sleep

    def _commit_chunk(self, chunk: list[WriteOp]) -> None:
        try:
            for op in chunk:
                op.apply(self.session)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    def _run_chunk(self, index: int, chunk: list[WriteOp], result: BatchResult) -> None:
        try:
            with_retries(
                lambda: self._commit_chunk(chunk),
                attempts=self.retry_attempts,
                base_delay=self.retry_base_delay,
                sleep=self.sleep,
            )
        except (SQLAlchemyError, ValueError) as exc:
            logger.warning(
                f"batch_chunk_failed: chunk={index} ops={len(chunk)} error={exc}"
            )
            result.per_chunk_errors.append(
                ChunkError(
                    chunk_index=index,
                    op_keys=[op.key for op in chunk],
                    error=str(exc),
                )
            )
            return
        result.chunks_committed += 1

    def _log(self, result: BatchResult) -> None:
        if result.total_ops:
            logger.info(
                f"batch_committed: ops={result.total_ops} chunks={result.chunks_committed} "
                f"failed_chunks={len(result.per_chunk_errors)}"
            )

    def commit_in_chunks(self, operations: Iterable[WriteOp]) -> BatchResult:
        ops = list(operations)
        result = BatchResult(total_ops=len(ops))
        for index, chunk in enumerate(_chunks(ops, self.max_ops_per_chunk)):
            self._run_chunk(index, chunk, result)
        self._log(result)
        return result

    def commit_each(self, operations: Iterable[WriteOp]) -> BatchResult:
        """Commit every operation as its own unit.

        A failing operation is reported under its own key and never rolls
        back its neighbours.
        """
        ops = list(operations)
        result = BatchResult(total_ops=len(ops))
        for index, op in enumerate(ops):
            self._run_chunk(index, [op], result)
        self._log(result)
        return result
