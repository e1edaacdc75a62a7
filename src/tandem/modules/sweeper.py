from __future__ import annotations

import logging
import threading

from tandem.context.core import StoppableService


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from tandem.db.engine import BookingEngine, SweepReport


log = logging.getLogger('tandem')


class Sweeper(StoppableService):
    """ Periodically releases the expired bookings of an engine on a
    background thread.

    The interval is taken from :ref:`settings.sweep_interval` unless given.
    As a stoppable service, the sweeper may be registered on a context::

        context.set_service(
            'sweeper', lambda context: Sweeper(engine).start(), cache=True
        )

    Replacing the service stops the running thread.

    Running a sweeper is optional. Triggering
    :meth:`tandem.db.engine.BookingEngine.sweep_expired` through cron works
    just as well, sweeps may even overlap.

    """

    def __init__(
        self,
        engine: BookingEngine,
        interval: float | None = None
    ):
        self.engine = engine
        self.interval = float(
            interval or engine.context.get_setting('sweep_interval')
        )
        self.stopped = threading.Event()
        self.thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def run_once(self) -> SweepReport:
        return self.engine.sweep()

    def run(self) -> None:
        while not self.stopped.wait(self.interval):
            try:
                self.run_once()
            except Exception:
                log.exception('Sweep of expired bookings failed')
            finally:
                # sessions are per thread, don't keep a connection checked
                # out until the next run
                self.engine.close()

    def start(self) -> Sweeper:
        assert not self.running, 'Sweeper is running already'

        self.stopped.clear()
        self.thread = threading.Thread(
            target=self.run,
            name='tandem-sweeper',
            daemon=True
        )
        self.thread.start()

        return self

    def stop_service(self, timeout: float | None = None) -> None:
        self.stopped.set()

        if self.thread is not None:
            self.thread.join(timeout)
            self.thread = None
