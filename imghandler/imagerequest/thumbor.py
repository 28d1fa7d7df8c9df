"""Thumbor-style request paths.

``/[unsafe/][trim/][meta/][fit-in/][WxH/][halign/][valign/][smart/]
[filters:name(args):.../][crop/]<key>``

The option prefix is the longest run of leading segments that match the
option grammar; everything after it is the object key. Alignment tokens only
count after a WxH segment. A path with no options that the custom rewrite
matches is left to the custom dialect. Unknown filters are ignored.
"""

import re
from typing import Callable, Optional

from imghandler.config import RewriteRule
from imghandler.edits import (
    Blur,
    Color,
    Convolve,
    Crop,
    Edit,
    EditSpecification,
    Fit,
    Flatten,
    Format,
    Grayscale,
    InvalidEdit,
    Normalize,
    OverlayWith,
    Resize,
    Rotate,
    Sharpen,
    SmartCrop,
    Tint,
    ToFormat
)
from imghandler.imagerequest.parsers import (
    NotApplicable,
    ParseOutcome,
    Parsed,
    RequestType,
    key_from_path,
    malformed,
    malformed_edit
)

dimension_re = re.compile(r'^(\d*)x(\d*)$')
crop_re = re.compile(r'^(\d+):(\d+):(\d+):(\d+)$')
crop_thumbor_re = re.compile(r'^(\d+)x(\d+):(\d+)x(\d+)$')
filters_re = re.compile(r'^filters:\w+\([^)]*\)(:\w+\([^)]*\))*$')
filter_re = re.compile(r'(\w+)\(([^)]*)\)')

HALIGN = {'left': 'left', 'center': None, 'right': 'right'}
VALIGN = {'top': 'top', 'middle': None, 'bottom': 'bottom'}

IGNORED_SEGMENTS = frozenset(['unsafe', 'meta', 'full-fit-in', 'adaptive-fit-in'])
IGNORED_FILTERS = frozenset(['strip_exif', 'strip_icc', 'upscale', 'autojpg', 'proportion'])

IMAGE_EXTENSIONS = (
    '.jpg',
    '.jpeg',
    '.png',
    '.webp',
    '.tiff',
    '.tif',
    '.gif',
    '.svg',
    '.avif',
    '.heic',
    '.heif',
)

S3_PREFIX = 's3:'


class InvalidThumborOption(Exception):
  pass


def split_args(raw: str) -> list[str]:
  return [a.strip() for a in raw.split(',')] if raw.strip() != '' else []


def to_int(value: str, name: str) -> int:
  try:
    return int(value)
  except ValueError:
    raise InvalidThumborOption(f'{name} must be an integer: {value}')


def to_float(value: str, name: str) -> float:
  try:
    return float(value)
  except ValueError:
    raise InvalidThumborOption(f'{name} must be a number: {value}')


def clamp(value: float, lower: float, upper: float) -> float:
  return max(lower, min(upper, value))


class ThumborMapper:
  """Collects thumbor options and maps them onto an edit specification."""

  def __init__(self) -> None:
    self.width: Optional[int] = None
    self.height: Optional[int] = None
    self.fit_in = False
    self.halign: Optional[str] = None
    self.valign: Optional[str] = None
    self.smart = False
    self.crop: Optional[Crop] = None
    self.filters: list[Edit] = []
    self.fill: Optional[Color] = None
    self.no_upscale = False
    self.stretch = False
    self.quality: Optional[int] = None
    self.sized = False

  def option(self, segment: str) -> bool:
    """Consume one path segment. Return False if it is not an option."""
    if segment in IGNORED_SEGMENTS or segment == 'trim' or segment.startswith('trim:'):
      return True
    if segment == 'fit-in':
      self.fit_in = True
      return True
    if self.sized and segment in HALIGN:
      self.halign = segment
      return True
    if self.sized and segment in VALIGN:
      self.valign = segment
      return True
    if segment == 'smart':
      self.smart = True
      return True

    if (m := dimension_re.match(segment)) is not None:
      self.sized = True
      self.width = int(m[1]) if m[1] not in ('', '0') else None
      self.height = int(m[2]) if m[2] not in ('', '0') else None
      return True

    if (m := crop_re.match(segment) or crop_thumbor_re.match(segment)) is not None:
      left, top, right, bottom = (int(m[i]) for i in range(1, 5))
      if right <= left or bottom <= top:
        raise InvalidThumborOption(f'invalid crop: {segment}')
      self.crop = Crop(left=left, top=top, width=right - left, height=bottom - top)
      return True

    if segment.startswith('filters:'):
      if filters_re.match(segment) is None:
        raise InvalidThumborOption(f'invalid filters: {segment}')
      for m in filter_re.finditer(segment[len('filters:'):]):
        self.filter(m[1], split_args(m[2]))
      return True

    return False

  def filter(self, name: str, args: list[str]) -> None:
    handler = FILTERS.get(name)
    if handler is not None:
      handler(self, args)

  def filter_ignored(self, args: list[str]) -> None:
    pass

  def filter_grayscale(self, args: list[str]) -> None:
    self.filters.append(Grayscale())

  def filter_equalize(self, args: list[str]) -> None:
    self.filters.append(Normalize())

  def filter_rotate(self, args: list[str]) -> None:
    if len(args) != 1:
      raise InvalidThumborOption('rotate requires an angle')
    self.filters.append(Rotate(to_int(args[0], 'rotate') % 360))

  def filter_format(self, args: list[str]) -> None:
    if len(args) != 1:
      raise InvalidThumborOption('format requires a format name')
    self.filters.append(ToFormat(Format.parse(args[0])))

  def filter_quality(self, args: list[str]) -> None:
    if len(args) != 1:
      raise InvalidThumborOption('quality requires a value')
    self.quality = int(clamp(to_int(args[0], 'quality'), 0, 100))

  def filter_blur(self, args: list[str]) -> None:
    if len(args) == 0:
      raise InvalidThumborOption('blur requires a radius')
    radius = to_float(args[0], 'blur radius')
    sigma = to_float(args[1], 'blur sigma') if len(args) > 1 else radius / 2
    if radius > 0:
      self.filters.append(Blur(clamp(sigma, 0.3, 1000)))

  def filter_sharpen(self, args: list[str]) -> None:
    radius = to_float(args[1], 'sharpen radius') if len(args) > 1 else 0
    self.filters.append(Sharpen(clamp(1 + radius / 2, 0.000001, 10)))

  def filter_rgb(self, args: list[str]) -> None:
    if len(args) != 3:
      raise InvalidThumborOption('rgb requires three values')
    r, g, b = (int(clamp(round(255 * to_float(a, 'rgb') / 100), 0, 255)) for a in args)
    self.filters.append(Tint(Color(r, g, b)))

  def filter_fill(self, args: list[str]) -> None:
    if len(args) != 1:
      raise InvalidThumborOption('fill requires a color')
    if args[0] in ('auto', 'blur', 'transparent'):
      return
    self.fill = Color.from_hex(args[0])

  def filter_background_color(self, args: list[str]) -> None:
    if len(args) != 1:
      raise InvalidThumborOption('background_color requires a color')
    self.filters.append(Flatten(Color.from_hex(args[0])))

  def filter_convolution(self, args: list[str]) -> None:
    if len(args) < 2:
      raise InvalidThumborOption('convolution requires a matrix and a column count')
    items = [to_float(i, 'convolution') for i in args[0].split(';')]
    columns = to_int(args[1], 'convolution columns')
    if columns <= 0 or len(items) % columns != 0:
      raise InvalidThumborOption('convolution matrix does not fit the column count')
    if len(args) > 2 and args[2].lower() == 'true':
      total = sum(items)
      if total != 0:
        items = [i / total for i in items]
    self.filters.append(
        Convolve(width=columns, height=len(items) // columns, kernel=tuple(items)))

  def filter_no_upscale(self, args: list[str]) -> None:
    self.no_upscale = True

  def filter_stretch(self, args: list[str]) -> None:
    self.stretch = True

  def filter_watermark(self, args: list[str]) -> None:
    if len(args) < 2:
      raise InvalidThumborOption('watermark requires a bucket and a key')

    def position(i: int) -> Optional[int]:
      if len(args) <= i or args[i] in ('', 'center'):
        return None
      return to_int(args[i], 'watermark position')

    def ratio(i: int) -> Optional[float]:
      if len(args) <= i or args[i] in ('', 'none'):
        return None
      return clamp(to_float(args[i], 'watermark ratio'), 0, 100)

    self.filters.append(
        OverlayWith(
            bucket=args[0],
            key=args[1],
            left=position(2),
            top=position(3),
            alpha=ratio(4),
            w_ratio=ratio(5),
            h_ratio=ratio(6)))

  def resize(self) -> Optional[Resize]:
    if self.width is None and self.height is None:
      return None

    position = ' '.join(
        p for p in [
            None if self.halign is None else HALIGN[self.halign],
            None if self.valign is None else VALIGN[self.valign],
        ] if p is not None)

    if self.stretch:
      fit = Fit.FILL
    elif self.fill is not None:
      fit = Fit.CONTAIN
    elif self.fit_in:
      fit = Fit.INSIDE
    else:
      fit = Fit.COVER

    return Resize(
        width=self.width,
        height=self.height,
        fit=fit,
        position=position if position != '' else 'centre',
        background=self.fill,
        without_enlargement=self.no_upscale)

  def edits(self) -> EditSpecification:
    edits: list[Edit] = []
    if self.smart:
      edits.append(SmartCrop())
    if self.crop is not None:
      edits.append(self.crop)
    resize = self.resize()
    if resize is not None:
      edits.append(resize)
    edits.extend(self.filters)
    return EditSpecification.of(edits)


FILTERS: dict[str, Callable[[ThumborMapper, list[str]], None]] = {
    'grayscale': ThumborMapper.filter_grayscale,
    'equalize': ThumborMapper.filter_equalize,
    'rotate': ThumborMapper.filter_rotate,
    'format': ThumborMapper.filter_format,
    'quality': ThumborMapper.filter_quality,
    'blur': ThumborMapper.filter_blur,
    'sharpen': ThumborMapper.filter_sharpen,
    'rgb': ThumborMapper.filter_rgb,
    'fill': ThumborMapper.filter_fill,
    'background_color': ThumborMapper.filter_background_color,
    'convolution': ThumborMapper.filter_convolution,
    'no_upscale': ThumborMapper.filter_no_upscale,
    'stretch': ThumborMapper.filter_stretch,
    'watermark': ThumborMapper.filter_watermark,
}

FILTERS.update({name: ThumborMapper.filter_ignored for name in IGNORED_FILTERS})


def parse_thumbor(path: str, rewrite_rule: Optional[RewriteRule] = None) -> ParseOutcome:
  segments = path.split('/')
  if len(segments) != 0 and segments[0] == '':
    segments = segments[1:]

  mapper = ThumborMapper()
  options_seen = False
  i = 0
  try:
    while i < len(segments) - 1 and mapper.option(segments[i]):
      options_seen = True
      i += 1
    edits = mapper.edits()
  except InvalidThumborOption as e:
    return malformed(str(e))
  except InvalidEdit as e:
    return malformed_edit(e)

  key = key_from_path('/'.join(segments[i:]))
  if key == '':
    if options_seen:
      return malformed('The thumbor request has no key.')
    return NotApplicable('empty path')

  if not options_seen and not key.lower().endswith(IMAGE_EXTENSIONS):
    return NotApplicable('no thumbor option and no image extension')
  if not options_seen and rewrite_rule is not None and rewrite_rule.matches(path):
    return NotApplicable('left to the custom rewrite')

  bucket = None
  if key.startswith(S3_PREFIX):
    bucket, _, key = key[len(S3_PREFIX):].partition('/')
    if bucket == '' or key == '':
      return malformed('The thumbor s3: key must be s3:<bucket>/<key>.')

  reduction_effort = None
  if mapper.quality is not None:
    fmt = edits.to_format
    if fmt is None and key.lower().endswith('.webp'):
      fmt = Format.WEBP
    if fmt == Format.WEBP:
      reduction_effort = mapper.quality

  return Parsed(
      request_type=RequestType.THUMBOR,
      key=key,
      bucket=bucket,
      edits=edits,
      reduction_effort=reduction_effort)

