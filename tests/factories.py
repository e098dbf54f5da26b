import threading
import time
from decimal import Decimal

from freelancedesk.db import SessionLocal
from freelancedesk.schemas import LineItemRequest
from freelancedesk.services import BillingServices, ServiceContext


def item(description="Design work", quantity="1", unit_price="100", tax_rate="0", discount="0", **kwargs):
    return LineItemRequest(
        description=description,
        quantity=Decimal(quantity),
        unit_price=Decimal(unit_price),
        tax_rate=Decimal(tax_rate),
        discount=Decimal(discount),
        **kwargs,
    )


class RecordingSink:
    def __init__(self):
        self.entries = []

    def record(self, entry) -> None:
        self.entries.append(entry)


class FailingSink:
    def record(self, entry) -> None:
        raise RuntimeError("audit store offline")


def in_own_session(clock, action):
    """Wrap ``action(services)`` so it runs against a session of its own."""

    def call():
        with SessionLocal() as session:
            return action(BillingServices(ServiceContext(db=session, clock=clock)))

    return call


def run_together(*calls):
    """Release every call at once from its own thread; returns each result or raised exception."""
    barrier = threading.Barrier(len(calls))
    outcomes = [None] * len(calls)

    def run(index, call):
        barrier.wait()
        try:
            outcomes[index] = call()
        except Exception as exc:
            outcomes[index] = exc

    threads = [threading.Thread(target=run, args=(index, call)) for index, call in enumerate(calls)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return outcomes


def slowed(monkeypatch, owner, name, delay=0.05):
    """Make ``owner.name`` pause before running so racing callers overlap."""
    original = getattr(owner, name)

    def wrapper(*args, **kwargs):
        time.sleep(delay)
        return original(*args, **kwargs)

    monkeypatch.setattr(owner, name, wrapper)
