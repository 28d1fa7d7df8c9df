import base64
import datetime
import json
import logging

import pytest

from imghandler.clients import ObjectStore
from imghandler.config import Settings
from imghandler.edits import EditSpecification, Format
from imghandler.errors import ErrorKind, ImageHandlerError
from imghandler.imagehandler.negotiation import Output
from imghandler.imagerequest.index import RequestInfo
from imghandler.imagerequest.parsers import RequestType
from imghandler.log import ContextLogger
from imghandler.testing.fakes import FakeS3Client

from .index import ImageResponse, response_headers

FALLBACK = b'\x89PNG\r\n\x1a\n' + b'\x00' * 16

FALLBACK_SETTINGS = Settings(
    source_buckets=('images',),
    enable_default_fallback_image=True,
    default_fallback_image_bucket='images',
    default_fallback_image_key='fallback.png')


def new_response(settings: Settings) -> tuple[FakeS3Client, ImageResponse]:
  s3 = FakeS3Client()
  s3.put(
      'images',
      'fallback.png',
      FALLBACK,
      'binary/octet-stream',
      last_modified=datetime.datetime(2021, 6, 7, 8, 9, 10, tzinfo=datetime.timezone.utc))
  log = ContextLogger(logging.getLogger(__name__))
  return s3, ImageResponse(log, settings, ObjectStore(s3))  # type: ignore


def request_info() -> RequestInfo:
  return RequestInfo(
      request_type=RequestType.DEFAULT,
      bucket='images',
      key='cat.jpg',
      edits=EditSpecification(),
      original_image=b'',
      content_type='image/jpeg',
      expires='',
      last_modified='Sat, 01 Jan 2000 00:00:00 GMT',
      cache_control='max-age=60',
      extra_headers={
          'Cache-Control': 'no-store',
          'X-Custom': 'yes'
      })


@pytest.mark.parametrize(
    'settings,is_error,is_alb,expected', [
        (
            Settings(source_buckets=()), False, False, {
                'Access-Control-Allow-Methods': 'GET',
                'Access-Control-Allow-Headers': 'Content-Type, Authorization',
                'Access-Control-Allow-Credentials': 'true',
            }),
        (
            Settings(source_buckets=(), cors_enabled=True, cors_origin='*'), True, True, {
                'Access-Control-Allow-Methods': 'GET',
                'Access-Control-Allow-Headers': 'Content-Type, Authorization',
                'Access-Control-Allow-Origin': '*',
                'Content-Type': 'application/json',
            }),
    ],
    ids=['api-gateway', 'alb-cors-error'])
def test_response_headers(
    settings: Settings,
    is_error: bool,
    is_alb: bool,
    expected: dict[str, str],
) -> None:
  assert response_headers(settings, is_error, is_alb) == expected


def test_success() -> None:
  _, response = new_response(Settings(source_buckets=('images',)))

  result = response.success(request_info(), Output(Format.WEBP, 'image/webp'), b'webp', False)

  assert result.status_code == 200
  assert result.is_body_binary
  assert base64.b64decode(result.body) == b'webp'
  assert result.headers['Content-Type'] == 'image/webp'
  assert result.headers['Expires'] == ''
  assert result.headers['Last-Modified'] == 'Sat, 01 Jan 2000 00:00:00 GMT'
  assert result.headers['Cache-Control'] == 'no-store'
  assert result.headers['X-Custom'] == 'yes'


def test_failure_without_fallback() -> None:
  _, response = new_response(Settings(source_buckets=('images',)))
  error = ImageHandlerError.of(ErrorKind.FORBIDDEN, 'nope')

  result = response.failure(error, False)

  assert result.to_lambda() == {
      'statusCode': 403,
      'isBase64Encoded': False,
      'headers': response_headers(Settings(source_buckets=('images',)), True, False),
      'body': json.dumps({
          'message': 'nope',
          'code': 'Forbidden',
          'status': 403
      }),
  }


@pytest.mark.parametrize(
    'kind,status', [
        (ErrorKind.IMAGE_NOT_FOUND, 404),
        (ErrorKind.INVALID_REQUEST, 400),
        (ErrorKind.INTERNAL_ERROR, 500),
    ],
    ids=['not-found', 'invalid', 'internal'])
def test_fallback(kind: ErrorKind, status: int) -> None:
  _, response = new_response(FALLBACK_SETTINGS)

  result = response.failure(ImageHandlerError.of(kind, 'failed'), True)

  assert result.status_code == status
  assert result.is_body_binary
  assert base64.b64decode(result.body) == FALLBACK
  assert result.headers['Content-Type'] == 'image/png'
  assert result.headers['Cache-Control'] == 'max-age=31536000,public'
  assert result.headers['Last-Modified'] == 'Mon, 07 Jun 2021 08:09:10 GMT'
  assert 'Access-Control-Allow-Credentials' not in result.headers


def test_fallback_fetch_failure() -> None:
  s3, response = new_response(FALLBACK_SETTINGS)
  s3.failure = 'AccessDenied'

  result = response.failure(ImageHandlerError.of(ErrorKind.IMAGE_NOT_FOUND, 'missing'), False)

  assert result.status_code == 404
  assert not result.is_body_binary
  assert json.loads(result.body) == {'message': 'missing', 'code': 'ImageNotFound', 'status': 404}


def test_fallback_disabled_without_key() -> None:
  s3, response = new_response(
      Settings(
          source_buckets=('images',),
          enable_default_fallback_image=True,
          default_fallback_image_bucket='images'))

  result = response.failure(ImageHandlerError.internal(), False)

  assert result.status_code == 500
  assert not result.is_body_binary
  assert s3.requests == []
