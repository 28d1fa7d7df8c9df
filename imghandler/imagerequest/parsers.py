import base64
import binascii
import dataclasses
import json
import re
from enum import Enum
from typing import Any, Callable, Optional, Sequence
from urllib import parse

from imghandler.config import RewriteRule
from imghandler.edits import EditSpecification, Format, InvalidEdit, UnsupportedFormat
from imghandler.errors import ErrorKind, ImageHandlerError
from imghandler.typing import Headers

base64_re = re.compile(r'^[0-9A-Za-z+/_-]+={0,2}$')

DEFAULT_REQUEST_FIELDS = frozenset(
    ['bucket', 'key', 'edits', 'outputFormat', 'reductionEffort', 'headers'])


class RequestType(Enum):
  DEFAULT = 'Default'
  THUMBOR = 'Thumbor'
  CUSTOM = 'Custom'


@dataclasses.dataclass(frozen=True)
class Parsed:
  request_type: RequestType
  key: str
  bucket: Optional[str] = None
  edits: EditSpecification = EditSpecification()
  output_format: Optional[Format] = None
  reduction_effort: Optional[int] = None
  headers: Headers = dataclasses.field(default_factory=dict)


@dataclasses.dataclass(frozen=True)
class NotApplicable:
  reason: str


@dataclasses.dataclass(frozen=True)
class Malformed:
  error: ImageHandlerError


ParseOutcome = Parsed | NotApplicable | Malformed


def malformed(message: str, kind: ErrorKind = ErrorKind.INVALID_REQUEST) -> Malformed:
  return Malformed(ImageHandlerError.of(kind, message))


def malformed_edit(e: InvalidEdit) -> Malformed:
  if isinstance(e, UnsupportedFormat):
    return malformed(str(e), ErrorKind.UNSUPPORTED_FORMAT)
  return malformed(str(e))


def key_from_path(path: str) -> str:
  return parse.unquote(path[1:] if path.startswith('/') else path)


def keep_duplicate_pairs(pairs: list[tuple[str, Any]]) -> dict[str, Any] | list[tuple[str, Any]]:
  d = dict(pairs)
  if len(d) != len(pairs):
    return pairs
  return d


def decode_default_path(path: str) -> Optional[bytes]:
  encoded = path[1:] if path.startswith('/') else path
  if encoded == '' or base64_re.match(encoded) is None:
    return None

  encoded = encoded.rstrip('=').replace('-', '+').replace('_', '/')
  if len(encoded) % 4 == 1:
    return None
  encoded += '=' * (-len(encoded) % 4)

  try:
    return base64.b64decode(encoded, validate=True)
  except (binascii.Error, ValueError):
    return None


def parse_default(path: str) -> ParseOutcome:
  decoded = decode_default_path(path)
  if decoded is None:
    return NotApplicable('not base64')
  if not decoded.lstrip().startswith(b'{'):
    return NotApplicable('not a JSON object')

  try:
    request = json.loads(decoded.decode('utf-8'), object_pairs_hook=keep_duplicate_pairs)
  except ValueError:
    return malformed('Decoding of the default request failed.')
  if not isinstance(request, dict):
    return malformed('The default request has duplicate fields.')

  unknown = sorted(set(request) - DEFAULT_REQUEST_FIELDS)
  if len(unknown) != 0:
    return malformed(f'Unknown field(s) in the default request: {", ".join(unknown)}')

  key = request.get('key')
  if not isinstance(key, str) or key == '':
    return malformed('The default request must include a key.')

  bucket = request.get('bucket')
  if bucket is not None and (not isinstance(bucket, str) or bucket == ''):
    return malformed('The bucket must be a non-empty string.')

  try:
    edits = EditSpecification.from_json(request.get('edits'))
    output_format = None if request.get('outputFormat') is None else Format.parse(
        request['outputFormat'])
  except InvalidEdit as e:
    return malformed_edit(e)

  reduction_effort = request.get('reductionEffort')
  if reduction_effort is not None and (isinstance(reduction_effort, bool) or
                                       not isinstance(reduction_effort, int)):
    return malformed('The reductionEffort must be an integer.')

  headers = request.get('headers', {})
  if not isinstance(headers, dict) or not all(
      isinstance(k, str) and isinstance(v, str) for k, v in headers.items()):
    return malformed('The headers must be a map of strings.')

  return Parsed(
      request_type=RequestType.DEFAULT,
      key=key,
      bucket=bucket,
      edits=edits,
      output_format=output_format,
      reduction_effort=reduction_effort,
      headers=headers)


def encode_default_request(request: dict[str, Any]) -> str:
  return '/' + base64.b64encode(json.dumps(request).encode('utf-8')).decode()


def parse_custom(path: str, rule: Optional[RewriteRule]) -> ParseOutcome:
  if rule is None:
    return NotApplicable('custom rewrite is not configured')
  if not rule.matches(path):
    return NotApplicable('rewrite pattern does not match')

  key = key_from_path(rule.apply(path))
  if key == '':
    return malformed('The rewritten path has no key.')

  return Parsed(request_type=RequestType.CUSTOM, key=key)


def parse_request(
    path: str,
    parsers: Sequence[Callable[[str], ParseOutcome]],
) -> Parsed:
  """Try every dialect in order. The first successful parse wins."""
  first_malformed: Optional[Malformed] = None
  for parser in parsers:
    match parser(path):
      case Parsed() as parsed:
        return parsed
      case Malformed() as m:
        if first_malformed is None:
          first_malformed = m
      case NotApplicable():
        pass

  if first_malformed is not None:
    raise first_malformed.error

  raise ImageHandlerError.of(
      ErrorKind.INVALID_REQUEST,
      'The type of request could not be determined. Please check that the request is a '
      'default, thumbor or custom request.')
