from enum import Enum
from http import HTTPStatus
from typing import Optional

from imghandler.typing import ErrorBody

INTERNAL_ERROR_MESSAGE = 'Internal error. Please contact the system administrator.'


class ErrorKind(Enum):
  INVALID_REQUEST = ('InvalidRequest', HTTPStatus.BAD_REQUEST)
  SIGNATURE_MISMATCH = ('SignatureMismatch', HTTPStatus.FORBIDDEN)
  FORBIDDEN = ('Forbidden', HTTPStatus.FORBIDDEN)
  IMAGE_NOT_FOUND = ('ImageNotFound', HTTPStatus.NOT_FOUND)
  SMART_CROP_FACE_NOT_FOUND = ('SmartCropFaceNotFound', HTTPStatus.BAD_REQUEST)
  UNSUPPORTED_FORMAT = ('UnsupportedFormat', HTTPStatus.BAD_REQUEST)
  TOO_LARGE_IMAGE = ('TooLargeImage', HTTPStatus.REQUEST_ENTITY_TOO_LARGE)
  INTERNAL_ERROR = ('InternalError', HTTPStatus.INTERNAL_SERVER_ERROR)

  def __init__(self, code: str, status: HTTPStatus):
    self.code = code
    self.status = status


class ImageHandlerError(Exception):
  """The only error shape that leaves the resolver and the pipeline."""

  def __init__(self, status: int, code: str, message: str):
    super().__init__(message)
    self.status = status
    self.code = code
    self.message = message

  @classmethod
  def of(cls, kind: ErrorKind, message: str, status: Optional[int] = None) -> 'ImageHandlerError':
    return cls(int(kind.status) if status is None else status, kind.code, message)

  @classmethod
  def internal(cls, message: str = INTERNAL_ERROR_MESSAGE) -> 'ImageHandlerError':
    return cls.of(ErrorKind.INTERNAL_ERROR, message)

  def is_client_error(self) -> bool:
    return 400 <= self.status < 500

  def to_json(self) -> ErrorBody:
    return {'message': self.message, 'code': self.code, 'status': self.status}

  def __eq__(self, other: object) -> bool:
    if not isinstance(other, ImageHandlerError):
      return NotImplemented
    return (self.status, self.code, self.message) == (other.status, other.code, other.message)

  def __hash__(self) -> int:
    return hash((self.status, self.code, self.message))

  def __repr__(self) -> str:
    return f'ImageHandlerError({self.status}, {self.code!r}, {self.message!r})'
