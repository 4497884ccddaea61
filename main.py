import logging
import signal
import time

from medisafe import create_app
from medisafe.services.scheduler_service import ReminderScheduler

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s %(levelname)s [%(name)s] %(message)s'
)

app = create_app()

if __name__ == '__main__':
    scheduler = ReminderScheduler(app)
    scheduler.start()

    running = True

    def _handle_signal(signum, frame):
        global running
        running = False

    signal.signal(signal.SIGTERM, _handle_signal)

    try:
        while running:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        scheduler.stop()
