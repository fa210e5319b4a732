import logging
import math

from .errors import ValueOutOfRange

logger = logging.getLogger(__name__)


class CalculatorService:
    """Read and add to the shared accumulator.

    get_current() is an unlocked read and may lag behind adds in flight.
    add() runs under the store's row lock, so all adds are serialized by
    commit order and none is lost.
    """

    def __init__(self, store):
        self.store = store

    def get_current(self) -> float:
        return self.store.read_value()

    def add(self, delta: float) -> float:
        with self.store.locked_transaction() as tx:
            current = tx.read_locked_value()
            new_value = current + delta
            if not math.isfinite(new_value):
                # leaving without commit rolls back and releases the lock
                raise ValueOutOfRange(f"{current} + {delta} is not finite")
            tx.write_value(new_value)
            tx.commit()
        logger.debug("added %s: %s -> %s", delta, current, new_value)
        return new_value
