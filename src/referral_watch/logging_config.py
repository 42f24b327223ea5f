import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional


_RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """
    One JSON object per line, for shipping to an external log/telemetry sink.

    Records emitted through `log_event` carry `event` + `fields`, which are lifted to top-level keys.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        event = getattr(record, "event", None)
        if event:
            payload["event"] = event
            payload.update(getattr(record, "fields", None) or {})
        for key, value in record.__dict__.items():
            if key in _RESERVED or key in ("event", "fields") or key.startswith("_"):
                continue
            payload.setdefault(key, value)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def log_event(logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    """
    Emit a structured event: `event` is a dotted name (e.g. "cycle.summary"), `fields` are flat values.

    Text logs read as `cycle.summary candidates=3 new=1 ...`; JSON logs get real keys.
    """
    if not logger.isEnabledFor(level):
        return
    rendered = " ".join(f"{k}={v}" for k, v in fields.items())
    msg = f"{event} {rendered}" if rendered else event
    logger.log(level, "%s", msg, extra={"event": event, "fields": fields})


def configure_logging(level: str = "INFO", file_path: Optional[str] = None, fmt: str = "text") -> None:
    numeric_level = getattr(logging, (level or "INFO").upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if file_path:
        path = Path(file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    if fmt == "json":
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")
    for h in handlers:
        h.setFormatter(formatter)

    logging.basicConfig(
        level=numeric_level,
        handlers=handlers,
        force=True,  # allow configure_logging() to be called multiple times (CLI does this)
    )

    # Reduce noise from chatty libraries
    for noisy in ("playwright", "urllib3", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(os.getenv("NOISY_LOG_LEVEL", "WARNING"))
