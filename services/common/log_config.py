"""
Logging setup shared by the services.
"""
import logging
import os

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s %(levelname)s [%(service)s] %(name)s: %(message)s"

_service_name = "-"
_factory_installed = False


def _install_record_factory() -> None:
    global _factory_installed
    if _factory_installed:
        return
    factory = logging.getLogRecordFactory()

    def record_factory(*args, **kwargs):
        record = factory(*args, **kwargs)
        record.service = _service_name
        return record

    logging.setLogRecordFactory(record_factory)
    _factory_installed = True


def configure_logging(service_name: str, level: str = LOG_LEVEL) -> None:
    """
    Configure root logging for a service process.

    Every record is stamped with the service name so interleaved output of
    the HTTP workers and consumer threads stays attributable. Calling this
    again only changes the name and level; the record factory is installed
    once per process.

    Args:
        service_name: Name stamped on each log record
        level: Log level name (default from LOG_LEVEL)
    """
    global _service_name
    _service_name = service_name
    _install_record_factory()
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, force=True)
    logging.getLogger("pika").setLevel(logging.WARNING)
