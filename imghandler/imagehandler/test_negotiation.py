from typing import Optional

import pytest

from imghandler.edits import EditSpecification, Format, Grayscale, ToFormat
from imghandler.imagerequest.index import RequestInfo
from imghandler.imagerequest.parsers import RequestType

from .negotiation import AcceptHeader, Output, clamp_effort, negotiate

CHROME_ACCEPT_HEADER = 'image/avif,image/webp,image/apng,image/*,*/*;q=0.8'
OLD_SAFARI_ACCEPT_HEADER = 'image/png,image/svg+xml,image/*;q=0.8,video/*;q=0.8,*/*;q=0.5'


def request_info(
    output_format: Optional[Format] = None,
    reduction_effort: Optional[int] = None,
    edits: EditSpecification = EditSpecification(),
) -> RequestInfo:
  return RequestInfo(
      request_type=RequestType.DEFAULT,
      bucket='images',
      key='cat.jpg',
      edits=edits,
      original_image=b'',
      output_format=output_format,
      reduction_effort=reduction_effort,
      content_type='image/jpeg')


@pytest.mark.parametrize(
    'accept_header,expected', [
        ('image/webp,*/*', True),
        ('IMAGE/WEBP', True),
        (CHROME_ACCEPT_HEADER, True),
        (OLD_SAFARI_ACCEPT_HEADER, False),
        ('', False),
    ],
    ids=['webp', 'upper', 'chrome', 'old-safari', 'empty'])
def test_accept_header(accept_header: str, expected: bool) -> None:
  assert AcceptHeader.from_str(accept_header).supports(Format.WEBP) == expected


@pytest.mark.parametrize(
    'info,accept_header,auto_webp,expected', [
        (request_info(), 'image/webp,*/*', True, Output(Format.WEBP, 'image/webp', 4)),
        (request_info(), 'image/webp,*/*', False, Output(None, 'image/jpeg')),
        (request_info(), OLD_SAFARI_ACCEPT_HEADER, True, Output(None, 'image/jpeg')),
        (request_info(Format.PNG), 'image/webp,*/*', True, Output(Format.PNG, 'image/png')),
        (
            request_info(edits=EditSpecification((Grayscale(), ToFormat(Format.AVIF)))),
            'image/webp,*/*', True, Output(Format.AVIF, 'image/avif', 4)),
        (request_info(Format.WEBP, 2), '', False, Output(Format.WEBP, 'image/webp', 2)),
        (request_info(Format.WEBP, 100), '', False, Output(Format.WEBP, 'image/webp', 6)),
        (request_info(Format.AVIF, -3), '', False, Output(Format.AVIF, 'image/avif', 0)),
    ],
    ids=['auto-webp', 'auto-webp-disabled', 'not-accepted', 'explicit', 'to-format', 'effort',
         'effort-clamped-high', 'effort-clamped-low'])
def test_negotiate(
    info: RequestInfo,
    accept_header: str,
    auto_webp: bool,
    expected: Output,
) -> None:
  output = negotiate(info, AcceptHeader.from_str(accept_header), auto_webp, 4)

  assert output == expected


def test_clamp_effort() -> None:
  assert clamp_effort(Format.WEBP, 9) == 6
  assert clamp_effort(Format.HEIF, 9) == 9
  assert clamp_effort(Format.JPEG, 9) is None
