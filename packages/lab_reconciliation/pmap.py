"""Bounded-concurrency mapping over a ThreadPoolExecutor, modelled on ``p-map``.

Two entry points:

- ``p_map()`` maps an iterable with a ``concurrency`` cap and returns results
  in input order. By default the first error propagates and queued work is
  cancelled; with ``stop_on_error=False`` every call runs and failures are
  raised together as an ``ExceptionGroup``.
- ``p_settle()`` is the join-all form used for batch saves: every call runs to
  completion and the caller gets one :class:`Settled` outcome per input, in
  input order, whether it succeeded or not. Nothing is raised for mapper
  failures.

Store I/O is blocking (SQLAlchemy sessions, file reads), so threads are the
unit of concurrency here.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Generic, TypeVar

InT = TypeVar("InT")
OutT = TypeVar("OutT")


class _Skip:
    __slots__ = ()

    def __repr__(self) -> str:  # pragma: no cover - trivial
        return "p_map_skip"


# Sentinel value: mappers can `return p_map_skip` to omit the element.
p_map_skip: object = _Skip()


@dataclass(frozen=True, slots=True)
class Settled(Generic[InT, OutT]):
    """Outcome of one mapper call under :func:`p_settle`."""

    item: InT
    value: OutT | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _check_concurrency(concurrency: int) -> None:
    if isinstance(concurrency, bool) or not isinstance(concurrency, int) or concurrency < 1:
        raise ValueError("concurrency must be a positive integer")


def _drive(
    iterable: Iterable[InT],
    call: Callable[[InT], object],
    *,
    concurrency: int,
    on_error: Callable[[int, Exception], None],
) -> dict[int, object]:
    """Run ``call`` over ``iterable`` with a sliding submission window.

    Returns results keyed by input index. Failures go to ``on_error``; if it
    raises, the pool is shut down without waiting and the error propagates.
    """

    # Not pre-materialized: large inputs stream through the window.
    it = enumerate(iterable)
    results: dict[int, object] = {}
    future_to_idx: dict[Future, int] = {}

    def _submit(pool: ThreadPoolExecutor) -> Future | None:
        try:
            idx, item = next(it)
        except StopIteration:
            return None
        fut = pool.submit(call, item)
        future_to_idx[fut] = idx
        return fut

    with ThreadPoolExecutor(max_workers=concurrency) as pool:
        active: set[Future] = set()
        for _ in range(concurrency):
            fut = _submit(pool)
            if fut is None:
                break
            active.add(fut)

        while active:
            done, active = wait(active, return_when=FIRST_COMPLETED)

            for fut in done:
                idx = future_to_idx.pop(fut)
                try:
                    results[idx] = fut.result()
                except Exception as e:  # noqa: BLE001
                    try:
                        on_error(idx, e)
                    except BaseException:
                        pool.shutdown(wait=False, cancel_futures=True)
                        raise

            for _ in range(len(done)):
                fut = _submit(pool)
                if fut is None:
                    break
                active.add(fut)

    return results


def p_map(
    iterable: Iterable[InT],
    mapper: Callable[[InT], OutT | object],
    *,
    concurrency: int,
    stop_on_error: bool = True,
) -> list[OutT]:
    """Map ``iterable`` through ``mapper`` with a bounded concurrency limit.

    - The returned list preserves the input order, excluding any items where the
      mapper returned ``p_map_skip``.
    - When ``stop_on_error`` is True (default), the first mapper error is
      propagated immediately and any not-yet-started work is cancelled.
    - When ``stop_on_error`` is False, the function waits for all mappers to
      finish and then raises an ``ExceptionGroup`` if any failed.
    """

    _check_concurrency(concurrency)
    errors: list[Exception] = []

    def _on_error(_idx: int, e: Exception) -> None:
        if stop_on_error:
            raise e
        errors.append(e)

    results = _drive(
        iterable, mapper, concurrency=concurrency, on_error=_on_error
    )

    if errors:
        raise ExceptionGroup("p_map: one or more mapper calls failed", errors)

    out: list[OutT] = []
    for i in sorted(results):
        val = results[i]
        if val is p_map_skip:
            continue
        out.append(val)  # type: ignore[arg-type]
    return out


def p_settle(
    iterable: Iterable[InT],
    mapper: Callable[[InT], OutT],
    *,
    concurrency: int,
) -> list[Settled[InT, OutT]]:
    """Run ``mapper`` over every item and report each outcome in input order.

    Unlike :func:`p_map`, a failing call never prevents the others from
    running, and the function itself does not raise for mapper errors.
    """

    _check_concurrency(concurrency)
    items = list(iterable)

    def _call(idx: int) -> Settled[InT, OutT]:
        item = items[idx]
        try:
            return Settled(item=item, value=mapper(item))
        except Exception as e:  # noqa: BLE001
            return Settled(item=item, error=e)

    def _on_error(_idx: int, e: Exception) -> None:  # pragma: no cover - _call never raises
        raise e

    results = _drive(
        range(len(items)), _call, concurrency=concurrency, on_error=_on_error
    )
    return [results[i] for i in range(len(items))]  # type: ignore[misc]


__all__ = ["Settled", "p_map", "p_map_skip", "p_settle"]
