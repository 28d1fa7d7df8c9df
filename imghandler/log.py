import datetime
import logging
import os
import sys
from logging import Logger
from typing import Any

from pythonjsonlogger.jsonlogger import JsonFormatter

import imghandler


class ImgHandlerJsonFormatter(JsonFormatter):
  """Adds a UTC timestamp, the level, the logger and the package version."""

  def __init__(self) -> None:
    super().__init__(json_ensure_ascii=False)

  def add_fields(self, log_record: Any, record: Any, message_dict: Any) -> None:
    now = datetime.datetime.now(datetime.timezone.utc)
    log_record['_ts'] = now.isoformat(timespec='microseconds').replace('+00:00', 'Z')
    log_record['level'] = str(log_record.get('level') or record.levelname).upper()
    log_record['logger'] = record.name
    log_record['version'] = imghandler.version

    super().add_fields(log_record, record, message_dict)


def init_logging(level: str | None = None) -> Logger:
  """Configure JSON logging on stderr for the package logger.

  The level comes from LOG_LEVEL unless given explicitly.
  """
  level = (level or os.environ.get('LOG_LEVEL') or 'DEBUG').upper()

  # Lambda installs its own handler on the root logger.
  root = logging.getLogger()
  for h in list(root.handlers):
    root.removeHandler(h)

  logging.getLogger('botocore').setLevel(logging.WARNING)
  logging.getLogger('urllib3').setLevel(logging.INFO)

  log = logging.getLogger(imghandler.__name__)
  log.setLevel(level)
  if len(log.handlers) == 0:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(ImgHandlerJsonFormatter())
    log.addHandler(handler)
  log.propagate = False

  return log


class ContextLogger:
  """Structured logger that merges a per-request context into every record."""

  def __init__(self, log: Logger, context: dict[str, Any] | None = None):
    self.log = log
    self.context: dict[str, Any] = {} if context is None else dict(context)

  def bind(self, **kwargs: Any) -> None:
    self.context.update(kwargs)

  def reset(self, **kwargs: Any) -> None:
    self.context = dict(kwargs)

  def debug(self, message: str, dict: dict[str, Any] | None = None) -> None:
    self.log.debug({'message': message, **self.context, **(dict or {})})

  def info(self, message: str, dict: dict[str, Any] | None = None) -> None:
    self.log.info({'message': message, **self.context, **(dict or {})})

  def warning(self, message: str, dict: dict[str, Any] | None = None) -> None:
    self.log.warning({'message': message, **self.context, **(dict or {})})

  def error(
      self, message: str, dict: dict[str, Any] | None = None, exc_info: bool = False) -> None:
    self.log.error({'message': message, **self.context, **(dict or {})}, exc_info=exc_info)
