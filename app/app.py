import logging
import threading

from core.config import DATA_DIR, IDENTITY, LOG_LEVEL, PASSWORD, SyncSettings
from controller.app_controller import build_controller


def main(stop_event: threading.Event = None):
    logging.basicConfig(level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    log = logging.getLogger("app")

    controller = build_controller(DATA_DIR, SyncSettings())
    controller.on_status(lambda phase: log.info("status: %s", phase))

    if not controller.resume_session():
        if IDENTITY and PASSWORD:
            if not controller.login(IDENTITY, PASSWORD):
                log.warning("Login failed, working local-only")
        else:
            log.info("No credentials configured, working local-only")

    stop_event = stop_event or threading.Event()
    try:
        while not stop_event.wait(1.0):
            pass
    except KeyboardInterrupt:
        pass
    finally:
        controller.shutdown()


if __name__ == "__main__":
    main()
