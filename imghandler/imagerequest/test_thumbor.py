from typing import Any, Optional

import pytest

from imghandler.config import RewriteRule
from imghandler.edits import (
    Blur,
    Color,
    Convolve,
    Crop,
    Fit,
    Flatten,
    Format,
    Grayscale,
    Normalize,
    OperationKind,
    OverlayWith,
    Resize,
    Rotate,
    SmartCrop,
    Tint,
    ToFormat
)

from .parsers import Malformed, NotApplicable, Parsed, RequestType
from .thumbor import parse_thumbor


def parsed(path: str) -> Parsed:
  outcome = parse_thumbor(path)
  assert isinstance(outcome, Parsed)
  assert outcome.request_type == RequestType.THUMBOR
  return outcome


@pytest.mark.parametrize(
    'path,expected', [
        ('/0x0/cat.jpg', None),
        ('/300x0/cat.jpg', Resize(width=300)),
        ('/0x200/cat.jpg', Resize(height=200)),
        ('/x200/cat.jpg', Resize(height=200)),
        ('/300x200/cat.jpg', Resize(width=300, height=200)),
        ('/fit-in/300x200/cat.jpg', Resize(width=300, height=200, fit=Fit.INSIDE)),
        ('/300x200/left/top/cat.jpg', Resize(width=300, height=200, position='left top')),
        ('/300x200/center/bottom/cat.jpg', Resize(width=300, height=200, position='bottom')),
        ('/300x200/filters:stretch()/cat.jpg', Resize(width=300, height=200, fit=Fit.FILL)),
        ('/300x200/filters:fill(fff)/cat.jpg',
         Resize(width=300, height=200, fit=Fit.CONTAIN, background=Color(255, 255, 255))),
        ('/300x200/filters:no_upscale()/cat.jpg',
         Resize(width=300, height=200, without_enlargement=True)),
    ],
    ids=['auto', 'width-only', 'height-only', 'empty-width', 'both', 'fit-in', 'align',
         'center-align', 'stretch', 'fill', 'no-upscale'])
def test_resize(path: str, expected: Optional[Resize]) -> None:
  assert parsed(path).edits.get(OperationKind.RESIZE) == expected


@pytest.mark.parametrize(
    'path,expected', [
        ('/filters:grayscale()/cat.jpg', Grayscale()),
        ('/filters:equalize()/cat.jpg', Normalize()),
        ('/filters:rotate(90)/cat.jpg', Rotate(90)),
        ('/filters:rotate(-90)/cat.jpg', Rotate(270)),
        ('/filters:format(png)/cat.jpg', ToFormat(Format.PNG)),
        ('/filters:blur(10)/cat.jpg', Blur(5.0)),
        ('/filters:blur(10,2)/cat.jpg', Blur(2.0)),
        ('/filters:rgb(100,0,50)/cat.jpg', Tint(Color(255, 0, 128))),
        ('/filters:background_color(ff0000)/cat.jpg', Flatten(Color(255, 0, 0))),
        ('/filters:convolution(1;2;1;2;4;2;1;2;1,3,true)/cat.jpg',
         Convolve(3, 3, (1 / 16, 2 / 16, 1 / 16, 2 / 16, 4 / 16, 2 / 16, 1 / 16, 2 / 16, 1 / 16))),
        ('/filters:watermark(assets,logo.png,10,-10,50,20,none)/cat.jpg',
         OverlayWith(bucket='assets', key='logo.png', left=10, top=-10, alpha=50, w_ratio=20)),
    ],
    ids=['grayscale', 'equalize', 'rotate', 'rotate-negative', 'format', 'blur', 'blur-sigma',
         'rgb', 'background-color', 'convolution', 'watermark'])
def test_filters(path: str, expected: Any) -> None:
  edits = parsed(path).edits

  assert list(edits) == [expected]


def test_smart_and_crop() -> None:
  outcome = parsed('/unsafe/10:20:110:220/300x200/smart/filters:grayscale()/cat.jpg')

  assert outcome.key == 'cat.jpg'
  assert list(outcome.edits) == [
      SmartCrop(),
      Crop(left=10, top=20, width=100, height=200),
      Resize(width=300, height=200),
      Grayscale(),
  ]


def test_thumbor_crop_form() -> None:
  assert parsed('/10x20:110x220/cat.jpg').edits.get(OperationKind.CROP) == Crop(
      left=10, top=20, width=100, height=200)


def test_multiple_filters() -> None:
  edits = parsed('/filters:grayscale():format(webp):strip_exif():unknown(1)/cat.jpg').edits

  assert list(edits) == [Grayscale(), ToFormat(Format.WEBP)]


def test_key_with_directories() -> None:
  outcome = parsed('/fit-in/300x200/photos/2024/%E7%8C%AB.jpg')

  assert outcome.key == 'photos/2024/猫.jpg'
  assert outcome.bucket is None


@pytest.mark.parametrize(
    'path,key', [
        ('/top/cat.jpg', 'top/cat.jpg'),
        ('/left/center/cat.jpg', 'left/center/cat.jpg'),
        ('/filters:grayscale()/middle/cat.jpg', 'middle/cat.jpg'),
        ('/300x200/middle/cat.jpg', 'cat.jpg'),
    ],
    ids=['valign', 'halign-valign', 'after-filters', 'after-size'])
def test_alignment_needs_size(path: str, key: str) -> None:
  assert parsed(path).key == key


def test_rewrite_rule_takes_plain_paths() -> None:
  rule = RewriteRule.compile('/^\\/v1\\/(.*)$/', '/originals/$1')

  assert isinstance(parse_thumbor('/v1/cat.jpg', rule), NotApplicable)
  assert parsed('/v2/cat.jpg').key == 'v2/cat.jpg'
  assert parse_thumbor('/300x200/v1/cat.jpg', rule) == parsed('/300x200/v1/cat.jpg')


def test_s3_bucket() -> None:
  outcome = parsed('/300x200/s3:assets/photos/cat.jpg')

  assert outcome.bucket == 'assets'
  assert outcome.key == 'photos/cat.jpg'


@pytest.mark.parametrize(
    'path,effort', [
        ('/filters:quality(4):format(webp)/cat.jpg', 4),
        ('/filters:quality(4)/cat.webp', 4),
        ('/filters:quality(4)/cat.jpg', None),
        ('/filters:quality(4):format(png)/cat.webp', None),
    ],
    ids=['webp-format', 'webp-key', 'jpeg', 'png-format'])
def test_quality(path: str, effort: Optional[int]) -> None:
  assert parsed(path).reduction_effort == effort


@pytest.mark.parametrize(
    'path', ['/', '/readme', '/photos/readme.txt'], ids=['empty', 'no-extension', 'not-image'])
def test_not_applicable(path: str) -> None:
  assert isinstance(parse_thumbor(path), NotApplicable)


@pytest.mark.parametrize(
    'path,code', [
        ('/300x200/', 'InvalidRequest'),
        ('/110:220:10:20/cat.jpg', 'InvalidRequest'),
        ('/filters:rotate(a)/cat.jpg', 'InvalidRequest'),
        ('/filters:format(bmp)/cat.jpg', 'UnsupportedFormat'),
        ('/filters:fill(nothex)/cat.jpg', 'InvalidRequest'),
        ('/300x200/s3:assets/', 'InvalidRequest'),
    ],
    ids=['no-key', 'inverted-crop', 'bad-angle', 'bad-format', 'bad-color', 'bucket-only'])
def test_malformed(path: str, code: str) -> None:
  outcome = parse_thumbor(path)

  assert isinstance(outcome, Malformed)
  assert outcome.error.code == code
