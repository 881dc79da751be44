"""
Cancellation — токен отмены для вызовов инструментов.

Токен срабатывает один раз. Составная отмена строится связыванием:
внешний токен через add_callback отменяет внутренний.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from loguru import logger

from mcp_broker.mcp_manager.exceptions import ToolCallAbortedError


T = TypeVar("T")


class CancellationToken:
    """Одноразовый сигнал отмены поверх asyncio.Event."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], None]] = []
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Tool call was aborted") -> None:
        """Отменяет токен и вызывает подписчиков. Повторный вызов — no-op."""
        if self._event.is_set():
            return

        self.reason = reason
        self._event.set()

        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"Cancellation callback failed: {e}")

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Подписывает callback на отмену.

        Если токен уже отменён — callback вызывается сразу.

        Returns:
            Функция отписки
        """
        if self.cancelled:
            callback()
            return lambda: None

        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    def link(self, other: CancellationToken) -> Callable[[], None]:
        """Отмена other отменяет и этот токен."""
        return other.add_callback(self.cancel)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise ToolCallAbortedError(self.reason or "Tool call was aborted")

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Ждёт awaitable, пока токен не отменён.

        При отмене задача с awaitable отменяется, а вызывающий
        получает ToolCallAbortedError. Сам подпроцесс может продолжить
        работу — перестаём ждать только мы.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()

        if not task.done() or task.cancelled():
            await asyncio.gather(task, return_exceptions=True)
            raise ToolCallAbortedError(self.reason or "Tool call was aborted")

        return task.result()
