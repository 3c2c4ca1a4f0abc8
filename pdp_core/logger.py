import logging, json, sys, time, os

# Record attributes copied into the JSON line when passed through ``extra=``
CONTEXT_FIELDS = ("submission_id", "key_id", "pdp_id", "status", "attempt", "task")


class JsonLineFormatter(logging.Formatter):
    """One JSON object per line, UTC timestamps, context fields when present."""

    converter = time.gmtime

    def __init__(self):
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%SZ")

    def format(self, record: logging.LogRecord) -> str:
        line = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                line[field] = value
        if record.exc_info:
            line["exc"] = self.formatException(record.exc_info)
        return json.dumps(line, ensure_ascii=False, default=str)


def get_logger(name="pdp", level=None, to_file=None):
    """Unified structured logger for all PDP pipeline components."""
    logger = logging.getLogger(name)
    if level is None:
        level = os.getenv("PDP_LOG_LEVEL", "INFO").upper()
    logger.setLevel(level)

    if not logger.handlers:
        formatter = JsonLineFormatter()
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

        if to_file:
            os.makedirs(os.path.dirname(to_file) or ".", exist_ok=True)
            file_handler = logging.FileHandler(to_file)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    return logger
