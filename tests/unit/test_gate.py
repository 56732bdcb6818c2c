"""Unit tests for kubewatcher.collector.gate."""

from __future__ import annotations

import asyncio

import pytest

from kubewatcher.collector.gate import AdmissionGate


class TestAdmissionGate:
    def test_rejects_zero_capacity(self) -> None:
        with pytest.raises(ValueError):
            AdmissionGate(0)

    async def test_admits_up_to_capacity(self) -> None:
        gate = AdmissionGate(2)
        assert await gate.acquire(0.05)
        assert await gate.acquire(0.05)
        assert not await gate.acquire(0.01)

    async def test_release_frees_slot(self) -> None:
        gate = AdmissionGate(1)
        assert await gate.acquire()
        waiter = asyncio.create_task(gate.acquire(1.0))
        await asyncio.sleep(0)
        assert not waiter.done()
        gate.release()
        assert await waiter is True

    async def test_closed_gate_admits_nobody(self) -> None:
        gate = AdmissionGate(2)
        gate.close()
        assert gate.closed
        assert not await gate.acquire(0.05)

    async def test_waiter_admitted_after_close_is_turned_away(self) -> None:
        gate = AdmissionGate(1)
        await gate.acquire()
        waiter = asyncio.create_task(gate.acquire(1.0))
        await asyncio.sleep(0)
        gate.close()
        gate.release()
        assert await waiter is False
