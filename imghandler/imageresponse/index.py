import base64
import dataclasses
import json
from http import HTTPStatus

from imghandler.clients import ObjectNotFound, ObjectStore, ObjectStoreError
from imghandler.config import Settings
from imghandler.errors import ImageHandlerError
from imghandler.imagehandler.negotiation import Output
from imghandler.imagerequest.index import (
    DEFAULT_CACHE_CONTROL,
    RequestInfo,
    http_date,
    infer_content_type
)
from imghandler.log import ContextLogger
from imghandler.typing import ExecutionResultDict, Headers


@dataclasses.dataclass(frozen=True)
class ExecutionResult:
  status_code: int
  is_body_binary: bool
  headers: Headers
  body: str

  def to_lambda(self) -> ExecutionResultDict:
    return {
        'statusCode': int(self.status_code),
        'isBase64Encoded': self.is_body_binary,
        'headers': self.headers,
        'body': self.body,
    }


def response_headers(settings: Settings, is_error: bool, is_alb: bool) -> Headers:
  headers: Headers = {
      'Access-Control-Allow-Methods': 'GET',
      'Access-Control-Allow-Headers': 'Content-Type, Authorization',
  }

  if not is_alb:
    headers['Access-Control-Allow-Credentials'] = 'true'

  if settings.cors_enabled:
    headers['Access-Control-Allow-Origin'] = settings.cors_origin

  if is_error:
    headers['Content-Type'] = 'application/json'

  return headers


def error_result(settings: Settings, error: ImageHandlerError, is_alb: bool) -> ExecutionResult:
  return ExecutionResult(
      status_code=error.status or HTTPStatus.INTERNAL_SERVER_ERROR,
      is_body_binary=False,
      headers=response_headers(settings, True, is_alb),
      body=json.dumps(error.to_json()))


class ImageResponse:
  """Maps pipeline outcomes to transport results.

  This is the only place that decides the visible status and body, and the
  only place that substitutes the fallback image.
  """

  def __init__(self, log: ContextLogger, settings: Settings, store: ObjectStore):
    self.log = log
    self.settings = settings
    self.store = store

  def success(
      self,
      request_info: RequestInfo,
      output: Output,
      processed: bytes,
      is_alb: bool,
  ) -> ExecutionResult:
    headers = response_headers(self.settings, False, is_alb)
    headers['Content-Type'] = output.content_type
    headers['Expires'] = request_info.expires
    headers['Last-Modified'] = request_info.last_modified
    headers['Cache-Control'] = request_info.cache_control
    headers.update(request_info.extra_headers)

    return ExecutionResult(
        status_code=HTTPStatus.OK,
        is_body_binary=True,
        headers=headers,
        body=base64.b64encode(processed).decode())

  def fallback(self, error: ImageHandlerError, is_alb: bool) -> ExecutionResult | None:
    bucket = self.settings.default_fallback_image_bucket
    key = self.settings.default_fallback_image_key
    try:
      image = self.store.get(bucket, key)
    except (ObjectNotFound, ObjectStoreError) as e:
      self.log.error(
          'failed to get the default fallback image', {
              'reason': str(e),
              'fallback_bucket': bucket,
              'fallback_key': key,
          })
      return None

    headers = response_headers(self.settings, False, is_alb)
    headers['Content-Type'] = infer_content_type(image)
    headers['Last-Modified'] = http_date(image.last_modified)
    headers['Cache-Control'] = DEFAULT_CACHE_CONTROL

    self.log.warning('default fallback image used', {'status': error.status, 'code': error.code})

    return ExecutionResult(
        status_code=error.status or HTTPStatus.INTERNAL_SERVER_ERROR,
        is_body_binary=True,
        headers=headers,
        body=base64.b64encode(image.body).decode())

  def failure(self, error: ImageHandlerError, is_alb: bool) -> ExecutionResult:
    if self.settings.fallback_image_enabled:
      result = self.fallback(error, is_alb)
      if result is not None:
        return result

    return error_result(self.settings, error, is_alb)
