import signal
import sys
import threading

from screen_time.config import configure_logging, settings
from screen_time.service import build_worker


def main() -> None:
    configure_logging()
    worker = build_worker(settings)

    if "--once" in sys.argv[1:]:
        result = worker.run_once()
        print(result.model_dump_json() if result else "no command processed")
        worker.close()
        return

    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())
    signal.signal(signal.SIGINT, lambda *_: stop.set())
    try:
        worker.run_forever(stop)
    finally:
        worker.close()


if __name__ == "__main__":
    main()
