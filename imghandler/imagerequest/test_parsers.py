import base64
import json
from typing import Any

import pytest

from imghandler.config import RewriteRule
from imghandler.edits import EditSpecification, Format, Grayscale, Resize
from imghandler.errors import ErrorKind, ImageHandlerError

from .parsers import (
    Malformed,
    NotApplicable,
    Parsed,
    RequestType,
    encode_default_request,
    parse_custom,
    parse_default,
    parse_request
)
from .thumbor import parse_thumbor


def encode_raw(raw: str) -> str:
  return '/' + base64.b64encode(raw.encode('utf-8')).decode()


def test_default() -> None:
  path = encode_default_request({
      'bucket': 'images',
      'key': 'cat.jpg',
      'edits': {
          'resize': {
              'width': 100
          },
          'grayscale': True
      },
      'outputFormat': 'webp',
      'reductionEffort': 3,
      'headers': {
          'Cache-Control': 'max-age=10'
      },
  })

  assert parse_default(path) == Parsed(
      request_type=RequestType.DEFAULT,
      key='cat.jpg',
      bucket='images',
      edits=EditSpecification((Resize(width=100), Grayscale())),
      output_format=Format.WEBP,
      reduction_effort=3,
      headers={'Cache-Control': 'max-age=10'})


def test_default_url_safe() -> None:
  raw = json.dumps({'key': 'ÿÿÿ.jpg'})
  encoded = base64.urlsafe_b64encode(raw.encode('utf-8')).decode().rstrip('=')

  outcome = parse_default('/' + encoded)

  assert isinstance(outcome, Parsed)
  assert outcome.key == 'ÿÿÿ.jpg'
  assert outcome.bucket is None
  assert len(outcome.edits) == 0


@pytest.mark.parametrize(
    'path', ['/', '/cat.jpg', '/fit-in/300x200/cat.jpg', encode_raw('[1, 2]')],
    ids=['empty', 'key', 'thumbor', 'json-array'])
def test_default_not_applicable(path: str) -> None:
  assert isinstance(parse_default(path), NotApplicable)


@pytest.mark.parametrize(
    'raw,code,message', [
        ('{"key": ', 'InvalidRequest', 'Decoding of the default request failed.'),
        ('{"key": "a.jpg", "key": "b.jpg"}', 'InvalidRequest',
         'The default request has duplicate fields.'),
        ('{"key": "a.jpg", "size": 1}', 'InvalidRequest',
         'Unknown field(s) in the default request: size'),
        ('{"bucket": "images"}', 'InvalidRequest', 'The default request must include a key.'),
        ('{"key": "a.jpg", "bucket": 1}', 'InvalidRequest',
         'The bucket must be a non-empty string.'),
        ('{"key": "a.jpg", "edits": {"zoom": 2}}', 'InvalidRequest', 'unknown edit: zoom'),
        ('{"key": "a.jpg", "outputFormat": "bmp"}', 'UnsupportedFormat',
         'unsupported format: bmp'),
        ('{"key": "a.jpg", "reductionEffort": "4"}', 'InvalidRequest',
         'The reductionEffort must be an integer.'),
        ('{"key": "a.jpg", "headers": {"X": 1}}', 'InvalidRequest',
         'The headers must be a map of strings.'),
        ('{"key": "a.jpg", "edits": {"resize": {"width": 1}, "resize": {"width": 2}}}',
         'InvalidRequest', 'duplicate edit: resize'),
    ],
    ids=['bad-json', 'duplicate-field', 'unknown-field', 'missing-key', 'bad-bucket',
         'unknown-edit', 'unsupported-format', 'bad-effort', 'bad-headers', 'duplicate-edit'])
def test_default_malformed(raw: str, code: str, message: str) -> None:
  outcome = parse_default(encode_raw(raw))

  assert isinstance(outcome, Malformed)
  assert outcome.error.code == code
  assert outcome.error.message == message
  assert outcome.error.status == 400


def test_custom() -> None:
  rule = RewriteRule.compile('/^\\/legacy\\/(.*)$/', '/$1')

  assert parse_custom('/legacy/a%20b.jpg', rule) == Parsed(
      request_type=RequestType.CUSTOM, key='a b.jpg')
  assert isinstance(parse_custom('/other/a.jpg', rule), NotApplicable)
  assert isinstance(parse_custom('/legacy/a.jpg', None), NotApplicable)


def parsers(rule: RewriteRule | None = None) -> list[Any]:
  return [
      parse_default,
      lambda path: parse_thumbor(path, rule),
      lambda path: parse_custom(path, rule),
  ]


@pytest.mark.parametrize(
    'path,request_type', [
        (encode_default_request({'key': 'cat.jpg'}), RequestType.DEFAULT),
        ('/300x200/cat.jpg', RequestType.THUMBOR),
        ('/cat.jpg', RequestType.THUMBOR),
        ('/legacy/cat', RequestType.CUSTOM),
        ('/legacy/cat.jpg', RequestType.CUSTOM),
        ('/300x200/legacy/cat.jpg', RequestType.THUMBOR),
    ],
    ids=[
        'default', 'thumbor', 'thumbor-key-only', 'custom', 'custom-image-path',
        'thumbor-options-over-custom'
    ])
def test_parse_request(path: str, request_type: RequestType) -> None:
  rule = RewriteRule.compile('^/legacy/(.*)$', r'/\1.jpg')

  assert parse_request(path, parsers(rule)).request_type == request_type


def test_parse_request_undetermined() -> None:
  with pytest.raises(ImageHandlerError) as e:
    parse_request('/legacy/cat', parsers())

  assert e.value.code == ErrorKind.INVALID_REQUEST.code
  assert e.value.message.startswith('The type of request could not be determined.')


def test_parse_request_first_malformed_wins() -> None:
  with pytest.raises(ImageHandlerError) as e:
    parse_request(encode_raw('{"bucket": "images"}'), parsers())

  assert e.value.message == 'The default request must include a key.'
