import asyncio
import logging
import os

from dotenv import load_dotenv

from config.constants import DEFAULT_AUDIT_LOG
from controllers.automation_controller import AutomationController
from core.event_bus import EventBusLogHandler

# Load environment variables
load_dotenv()

LOG_FILE = os.getenv("LOG_FILE", "scheduler.log")
AUDIT_LOG_FILE = os.getenv("AUDIT_LOG_FILE", DEFAULT_AUDIT_LOG)

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(LOG_FILE, encoding='utf-8'),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

# Noisy third-party loggers
logging.getLogger("apscheduler").setLevel(logging.WARNING)
logging.getLogger("obsws_python").setLevel(logging.WARNING)
logging.getLogger("urllib3").setLevel(logging.WARNING)


def setup_audit_log(path: str) -> None:
    """One line per executed action, written by the action executor."""
    audit_logger = logging.getLogger("action_audit")
    audit_handler = logging.FileHandler(path, encoding='utf-8')
    audit_handler.setFormatter(logging.Formatter('%(message)s'))
    audit_logger.addHandler(audit_handler)
    audit_logger.propagate = False


if __name__ == "__main__":
    setup_audit_log(AUDIT_LOG_FILE)
    controller = AutomationController()
    bus_handler = EventBusLogHandler(controller.bus)
    bus_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
    logging.getLogger().addHandler(bus_handler)
    try:
        asyncio.run(controller.run())
    except KeyboardInterrupt:
        logger.info("Interrupted, exiting")
