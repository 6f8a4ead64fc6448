from typing import Callable

from weatherguessr import socketio


class Ticker:
    """Repeating background task that runs ``fn`` inside an app context.

    - No-ops in TESTING mode unless ENABLE_TIMERS_IN_TESTS is set
    - ``tick()`` runs one iteration synchronously, which tests use directly
    - ``stop()`` lets the loop exit after its current sleep
    """

    def __init__(self, app, name: str, interval_sec: float, fn: Callable[[], None]):
        self.app = app
        self.name = name
        self.interval_sec = interval_sec
        self.fn = fn
        self.running = False
        self._generation = 0

    def start(self) -> bool:
        if self.running:
            return True
        if self.app.config.get('TESTING') and not self.app.config.get('ENABLE_TIMERS_IN_TESTS'):
            return False
        if not self.interval_sec or self.interval_sec <= 0:
            return False
        self.running = True
        self._generation += 1
        self.app.logger.info(f"[timer-set] name={self.name} interval={self.interval_sec}s")
        socketio.start_background_task(self._loop, self._generation)
        return True

    def stop(self) -> None:
        if self.running:
            self.app.logger.info(f"[timer-stop] name={self.name}")
        self.running = False

    def tick(self) -> None:
        with self.app.app_context():
            try:
                self.fn()
            except Exception:
                self.app.logger.exception(f"[timer-error] name={self.name}")

    def _live(self, generation: int) -> bool:
        return self.running and generation == self._generation

    def _loop(self, generation: int) -> None:
        # A restart bumps the generation, so loops from earlier starts exit
        while self._live(generation):
            socketio.sleep(self.interval_sec)
            if not self._live(generation):
                break
            self.tick()
