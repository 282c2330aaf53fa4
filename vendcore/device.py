"""Device reconciliation adapter.

The dispensing hardware is an opaque collaborator: it receives a dispense
instruction and reports one of the closed ``DeviceOutcome`` values. The
``VendingMachine`` drives reserve → dispense → finalize for one purchase.

Example:
    device = ScriptedDevice([DeviceOutcome.SUCCESS])
    machine = VendingMachine(engine, device)
    order = machine.vend(user_id, product_id)
"""

from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Iterable

import structlog

from .engine import TransactionEngine
from .models import DeviceOutcome, DispenseInstruction, Order

logger = structlog.get_logger()


class DeviceAdapter(ABC):
    """Translates a dispense instruction into a physical outcome."""

    @abstractmethod
    def dispense(self, instruction: DispenseInstruction) -> DeviceOutcome:
        """Attempt to dispense from the instructed slot."""


class ScriptedDevice(DeviceAdapter):
    """Reports outcomes from a fixed script, then a default.

    Useful for demos and tests; records every instruction it receives.
    """

    def __init__(
        self,
        outcomes: Iterable[DeviceOutcome] = (),
        default: DeviceOutcome = DeviceOutcome.SUCCESS,
    ):
        self._outcomes = deque(DeviceOutcome(o) for o in outcomes)
        self._default = DeviceOutcome(default)
        self.instructions: list[DispenseInstruction] = []

    def dispense(self, instruction: DispenseInstruction) -> DeviceOutcome:
        self.instructions.append(instruction)
        return self._outcomes.popleft() if self._outcomes else self._default


class VendingMachine:
    """Runs one purchase end to end against a device."""

    def __init__(self, engine: TransactionEngine, device: DeviceAdapter):
        self.engine = engine
        self.device = device

    def vend(self, user_id: str, product_id: str) -> Order:
        """Reserve, dispense and finalize. Returns the finalized order.

        Reservation errors propagate untouched; nothing was committed.
        """
        result = self.engine.attempt_dispense(user_id, product_id)
        instruction = result.instruction
        log = logger.bind(order_id=instruction.order_id, slot_number=instruction.slot_number)

        try:
            outcome = DeviceOutcome(self.device.dispense(instruction))
        except Exception:
            # The order must not stay processing; an unresponsive device is a timeout.
            log.exception("device_error")
            outcome = DeviceOutcome.TIMEOUT

        log.info("device_reported", outcome=outcome.value)
        return self.engine.finalize(instruction.order_id, outcome)
