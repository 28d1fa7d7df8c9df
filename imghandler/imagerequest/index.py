import dataclasses
import datetime
from email.utils import format_datetime
from typing import Callable, Optional

from dateutil import parser

from imghandler.clients import ObjectNotFound, ObjectStore, ObjectStoreError, StoredObject
from imghandler.config import RewriteRule, Settings
from imghandler.edits import EditSpecification, Format, OperationKind, OverlayWith
from imghandler.errors import ErrorKind, ImageHandlerError
from imghandler.imagerequest.parsers import (
    ParseOutcome,
    Parsed,
    RequestType,
    parse_custom,
    parse_default,
    parse_request
)
from imghandler.imagerequest.signature import SignatureVerifier
from imghandler.imagerequest.thumbor import parse_thumbor
from imghandler.log import ContextLogger
from imghandler.typing import Headers, ImageHandlerEvent

DEFAULT_CACHE_CONTROL = 'max-age=31536000,public'

UNTYPED_CONTENT_TYPES = ['binary/octet-stream', 'application/octet-stream']


@dataclasses.dataclass(frozen=True)
class RequestInfo:
  request_type: RequestType
  bucket: str
  key: str
  edits: EditSpecification
  original_image: bytes = dataclasses.field(repr=False)
  output_format: Optional[Format] = None
  reduction_effort: Optional[int] = None
  content_type: str = ''
  expires: str = ''
  last_modified: str = ''
  cache_control: str = DEFAULT_CACHE_CONTROL
  extra_headers: Headers = dataclasses.field(default_factory=dict)


def infer_image_type(image: bytes) -> Optional[Format]:
  head = image[:16]
  if head.startswith(b'\xff\xd8\xff'):
    return Format.JPEG
  if head.startswith(b'\x89PNG\r\n\x1a\n'):
    return Format.PNG
  if head.startswith(b'RIFF') and head[8:12] == b'WEBP':
    return Format.WEBP
  if head.startswith(b'GIF87a') or head.startswith(b'GIF89a'):
    return Format.GIF
  if head.startswith(b'II*\x00') or head.startswith(b'MM\x00*'):
    return Format.TIFF
  if head[4:8] == b'ftyp':
    brand = head[8:12]
    if brand in (b'avif', b'avis'):
      return Format.AVIF
    if brand in (b'heic', b'heix', b'mif1', b'msf1'):
      return Format.HEIF
  return None


def infer_content_type(stored: StoredObject) -> str:
  if stored.content_type is not None and stored.content_type not in UNTYPED_CONTENT_TYPES:
    return stored.content_type

  stripped = stored.body[:256].lstrip()
  if stripped.startswith(b'<svg') or (stripped.startswith(b'<?xml') and b'<svg' in stripped):
    return 'image/svg+xml'

  fmt = infer_image_type(stored.body)
  if fmt is not None:
    return fmt.mime

  return stored.content_type or ''


def http_date(value: Optional[datetime.datetime | str]) -> str:
  if value is None or value == '':
    return ''
  if isinstance(value, str):
    try:
      value = parser.parse(value)
    except (ValueError, OverflowError):
      return value
  if value.tzinfo is None:
    value = value.replace(tzinfo=datetime.timezone.utc)
  return format_datetime(value.astimezone(datetime.timezone.utc), usegmt=True)


class ImageRequest:
  """Resolves an inbound event into a fully populated RequestInfo."""

  def __init__(
      self,
      log: ContextLogger,
      settings: Settings,
      store: ObjectStore,
      verifier: Optional[SignatureVerifier],
      rewrite_rule: Optional[RewriteRule],
  ):
    self.log = log
    self.settings = settings
    self.store = store
    self.verifier = verifier
    self.rewrite_rule = rewrite_rule

  def parsers(self) -> list[Callable[[str], ParseOutcome]]:
    return [
        parse_default,
        lambda path: parse_thumbor(path, self.rewrite_rule),
        lambda path: parse_custom(path, self.rewrite_rule),
    ]

  def parse(self, path: str) -> Parsed:
    return parse_request(path, self.parsers())

  def verify(self, event: ImageHandlerEvent, path: str) -> None:
    if not self.settings.enable_signature:
      return
    if self.verifier is None:
      raise ImageHandlerError.internal('Signature verification is enabled without a verifier.')

    query = event.get('queryStringParameters') or {}
    self.verifier.verify(path, query.get('signature'))

  def select_bucket(self, parsed: Parsed) -> str:
    if parsed.bucket is not None:
      bucket = parsed.bucket
    else:
      default_bucket = self.settings.default_bucket
      if default_bucket is None:
        raise ImageHandlerError.internal('SOURCE_BUCKETS is not configured.')
      bucket = default_bucket

    self.check_allowed(bucket)
    return bucket

  def check_allowed(self, bucket: str) -> None:
    if bucket not in self.settings.source_buckets:
      raise ImageHandlerError.of(
          ErrorKind.FORBIDDEN,
          'The bucket you specified could not be found. Please check the spelling of the bucket '
          'name in your request.')

  def get_original(self, bucket: str, key: str) -> StoredObject:
    try:
      return self.store.get(bucket, key)
    except ObjectNotFound:
      raise ImageHandlerError.of(
          ErrorKind.IMAGE_NOT_FOUND,
          'The image you specified could not be found. Please check your request syntax as well '
          'as the bucket you specified to ensure it exists.')
    except ObjectStoreError as e:
      self.log.error('failed to get the original image', {'reason': str(e)})
      raise ImageHandlerError.internal()

  def setup(self, event: ImageHandlerEvent) -> RequestInfo:
    path = event.get('path') or ''

    parsed = self.parse(path)
    self.log.bind(request_type=parsed.request_type.value, key=parsed.key)

    self.verify(event, path)

    bucket = self.select_bucket(parsed)
    self.log.bind(bucket=bucket)

    overlay = parsed.edits.get(OperationKind.OVERLAY_WITH)
    if isinstance(overlay, OverlayWith):
      self.check_allowed(overlay.bucket)

    original = self.get_original(bucket, parsed.key)

    request_info = RequestInfo(
        request_type=parsed.request_type,
        bucket=bucket,
        key=parsed.key,
        edits=parsed.edits,
        original_image=original.body,
        output_format=parsed.output_format,
        reduction_effort=parsed.reduction_effort,
        content_type=infer_content_type(original),
        expires=http_date(original.expires),
        last_modified=http_date(original.last_modified),
        cache_control=original.cache_control or DEFAULT_CACHE_CONTROL,
        extra_headers=dict(parsed.headers))

    self.log.debug(
        'request resolved', {
            'edits': request_info.edits.to_json(),
            'output_format': None if request_info.output_format is None else
                             request_info.output_format.value,
            'content_type': request_info.content_type,
            'size': len(request_info.original_image),
        })

    return request_info

  def resolve(self, event: ImageHandlerEvent) -> RequestInfo | ImageHandlerError:
    try:
      return self.setup(event)
    except ImageHandlerError as e:
      return e
    except Exception as e:
      self.log.error('unexpected error while resolving the request', {'reason': str(e)},
                     exc_info=True)
      return ImageHandlerError.internal()
