"""Canonical, codec-agnostic edit specification.

An edit specification is an ordered sequence of edits, one per operation
kind. Every kind has its own frozen payload type which knows how to read
itself from the JSON form used by default requests (``from_json``) and how
to write itself back (``to_json``).
"""

import dataclasses
from enum import Enum
from typing import Any, ClassVar, Iterable, Iterator, Optional, Self, Union


class InvalidEdit(Exception):
  pass


class OperationKind(Enum):
  RESIZE = 'resize'
  CROP = 'crop'
  SMART_CROP = 'smartCrop'
  ROUND_CROP = 'roundCrop'
  ROTATE = 'rotate'
  OVERLAY_WITH = 'overlayWith'
  CONTENT_MODERATION = 'contentModeration'
  TO_FORMAT = 'toFormat'
  FLATTEN = 'flatten'
  BLUR = 'blur'
  CONVOLVE = 'convolve'
  NORMALIZE = 'normalize'
  GRAYSCALE = 'grayscale'
  TINT = 'tint'
  SHARPEN = 'sharpen'


class Format(Enum):
  JPEG = 'jpeg'
  PNG = 'png'
  WEBP = 'webp'
  TIFF = 'tiff'
  HEIF = 'heif'
  GIF = 'gif'
  AVIF = 'avif'

  @classmethod
  def parse(cls, value: Any) -> 'Format':
    if not isinstance(value, str):
      raise InvalidEdit(f'format must be a string: {value!r}')
    name = value.lower()
    if name == 'jpg':
      name = 'jpeg'
    elif name == 'tif':
      name = 'tiff'
    try:
      return cls(name)
    except ValueError:
      raise UnsupportedFormat(f'unsupported format: {value}')

  @property
  def mime(self) -> str:
    return f'image/{self.value}'

  @property
  def extension(self) -> str:
    return f'.{self.value}'

  @property
  def effort_range(self) -> Optional[tuple[int, int]]:
    """Reduction effort accepted by the encoder, or None if it has none."""
    match self:
      case Format.WEBP:
        return (0, 6)
      case Format.AVIF | Format.HEIF:
        return (0, 9)
      case _:
        return None


class UnsupportedFormat(InvalidEdit):
  pass


class Fit(Enum):
  COVER = 'cover'
  CONTAIN = 'contain'
  FILL = 'fill'
  INSIDE = 'inside'
  OUTSIDE = 'outside'


POSITIONS = frozenset([
    'centre',
    'center',
    'top',
    'right top',
    'right',
    'right bottom',
    'bottom',
    'left bottom',
    'left',
    'left top',
    'north',
    'northeast',
    'east',
    'southeast',
    'south',
    'southwest',
    'west',
    'northwest',
    'entropy',
    'attention',
])


def _number(
    value: Any,
    name: str,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float:
  if isinstance(value, bool) or not isinstance(value, (int, float)):
    raise InvalidEdit(f'{name} must be a number: {value!r}')
  if minimum is not None and value < minimum:
    raise InvalidEdit(f'{name} must be >= {minimum}: {value}')
  if maximum is not None and maximum < value:
    raise InvalidEdit(f'{name} must be <= {maximum}: {value}')
  return value


def _int(value: Any, name: str, minimum: int | None = None, maximum: int | None = None) -> int:
  if isinstance(value, float) and value.is_integer():
    value = int(value)
  if isinstance(value, bool) or not isinstance(value, int):
    raise InvalidEdit(f'{name} must be an integer: {value!r}')
  return int(_number(value, name, minimum, maximum))


def _object(value: Any, name: str, allowed: Iterable[str]) -> dict[str, Any]:
  if not isinstance(value, dict):
    raise InvalidEdit(f'{name} must be an object: {value!r}')
  unknown = sorted(set(value) - set(allowed))
  if len(unknown) != 0:
    raise InvalidEdit(f'unknown {name} parameter(s): {", ".join(unknown)}')
  return value


def _drop_none(d: dict[str, Any]) -> dict[str, Any]:
  return {k: v for k, v in d.items() if v is not None}


@dataclasses.dataclass(eq=True, frozen=True)
class Color:
  r: int
  g: int
  b: int
  alpha: Optional[float] = None

  @classmethod
  def from_json(cls, value: Any, name: str) -> Self:
    v = _object(value, name, ['r', 'g', 'b', 'alpha'])
    try:
      r, g, b = v['r'], v['g'], v['b']
    except KeyError as e:
      raise InvalidEdit(f'{name} requires {e}')
    alpha = v.get('alpha')
    return cls(
        r=_int(r, f'{name}.r', 0, 255),
        g=_int(g, f'{name}.g', 0, 255),
        b=_int(b, f'{name}.b', 0, 255),
        alpha=None if alpha is None else _number(alpha, f'{name}.alpha', 0, 1))

  @classmethod
  def from_hex(cls, value: str) -> Self:
    h = value.lstrip('#')
    if len(h) == 3:
      h = ''.join(c * 2 for c in h)
    if len(h) != 6:
      raise InvalidEdit(f'invalid color: {value}')
    try:
      return cls(int(h[0:2], 16), int(h[2:4], 16), int(h[4:6], 16))
    except ValueError:
      raise InvalidEdit(f'invalid color: {value}')

  def to_json(self) -> dict[str, Any]:
    return _drop_none({'r': self.r, 'g': self.g, 'b': self.b, 'alpha': self.alpha})

  def rgb(self) -> list[float]:
    return [float(self.r), float(self.g), float(self.b)]


@dataclasses.dataclass(eq=True, frozen=True)
class Resize:
  kind: ClassVar[OperationKind] = OperationKind.RESIZE

  width: Optional[int] = None
  height: Optional[int] = None
  fit: Fit = Fit.COVER
  position: str = 'centre'
  background: Optional[Color] = None
  without_enlargement: bool = False

  @classmethod
  def from_json(cls, value: Any) -> Optional[Self]:
    v = _object(value, 'resize', ['width', 'height', 'fit', 'position', 'background',
                                  'withoutEnlargement'])
    width = v.get('width')
    height = v.get('height')
    width = None if width in (None, 0) else _int(width, 'resize.width', 1)
    height = None if height in (None, 0) else _int(height, 'resize.height', 1)
    if width is None and height is None:
      return None

    try:
      fit = Fit(v.get('fit', Fit.COVER.value))
    except ValueError:
      raise InvalidEdit(f'invalid resize.fit: {v.get("fit")!r}')

    position = v.get('position', 'centre')
    if position not in POSITIONS:
      raise InvalidEdit(f'invalid resize.position: {position!r}')

    background = v.get('background')
    without_enlargement = v.get('withoutEnlargement', False)
    if not isinstance(without_enlargement, bool):
      raise InvalidEdit('resize.withoutEnlargement must be a boolean')

    return cls(
        width=width,
        height=height,
        fit=fit,
        position=position,
        background=None if background is None else Color.from_json(
            background, 'resize.background'),
        without_enlargement=without_enlargement)

  def to_json(self) -> dict[str, Any]:
    return _drop_none({
        'width': self.width,
        'height': self.height,
        'fit': self.fit.value,
        'position': self.position,
        'background': None if self.background is None else self.background.to_json(),
        'withoutEnlargement': self.without_enlargement,
    })


@dataclasses.dataclass(eq=True, frozen=True)
class Crop:
  kind: ClassVar[OperationKind] = OperationKind.CROP

  left: int
  top: int
  width: int
  height: int

  @classmethod
  def from_json(cls, value: Any) -> Self:
    v = _object(value, 'crop', ['left', 'top', 'width', 'height'])
    try:
      return cls(
          left=_int(v['left'], 'crop.left', 0),
          top=_int(v['top'], 'crop.top', 0),
          width=_int(v['width'], 'crop.width', 1),
          height=_int(v['height'], 'crop.height', 1))
    except KeyError as e:
      raise InvalidEdit(f'crop requires {e}')

  def to_json(self) -> dict[str, Any]:
    return {'left': self.left, 'top': self.top, 'width': self.width, 'height': self.height}


@dataclasses.dataclass(eq=True, frozen=True)
class SmartCrop:
  kind: ClassVar[OperationKind] = OperationKind.SMART_CROP

  face_index: Optional[int] = None
  # Percent of the face box added on every side.
  padding: float = 0

  @classmethod
  def from_json(cls, value: Any) -> Optional[Self]:
    if value is False:
      return None
    if value is True:
      return cls()
    v = _object(value, 'smartCrop', ['faceIndex', 'padding'])
    face_index = v.get('faceIndex')
    return cls(
        face_index=None if face_index is None else _int(face_index, 'smartCrop.faceIndex', 0),
        padding=_number(v.get('padding', 0), 'smartCrop.padding', 0))

  def to_json(self) -> dict[str, Any]:
    return _drop_none({'faceIndex': self.face_index, 'padding': self.padding})


@dataclasses.dataclass(eq=True, frozen=True)
class RoundCrop:
  kind: ClassVar[OperationKind] = OperationKind.ROUND_CROP

  top: Optional[float] = None
  left: Optional[float] = None
  rx: Optional[float] = None
  ry: Optional[float] = None

  @classmethod
  def from_json(cls, value: Any) -> Optional[Self]:
    if value is False:
      return None
    if value is True:
      return cls()
    v = _object(value, 'roundCrop', ['top', 'left', 'rx', 'ry'])
    return cls(**{
        k: None if v.get(k) is None else _number(v[k], f'roundCrop.{k}', 0)
        for k in ['top', 'left', 'rx', 'ry']
    })

  def to_json(self) -> dict[str, Any]:
    return _drop_none({'top': self.top, 'left': self.left, 'rx': self.rx, 'ry': self.ry})


@dataclasses.dataclass(eq=True, frozen=True)
class Rotate:
  kind: ClassVar[OperationKind] = OperationKind.ROTATE

  # None rotates according to the EXIF orientation.
  angle: Optional[int] = None

  @classmethod
  def from_json(cls, value: Any) -> Self:
    if value is None:
      return cls()
    return cls(_int(value, 'rotate', -360, 360))

  def to_json(self) -> Optional[int]:
    return self.angle


@dataclasses.dataclass(eq=True, frozen=True)
class OverlayWith:
  kind: ClassVar[OperationKind] = OperationKind.OVERLAY_WITH

  bucket: str
  key: str
  w_ratio: Optional[float] = None
  h_ratio: Optional[float] = None
  alpha: Optional[float] = None
  left: Optional[int] = None
  top: Optional[int] = None

  @classmethod
  def from_json(cls, value: Any) -> Self:
    v = _object(value, 'overlayWith', ['bucket', 'key', 'wRatio', 'hRatio', 'alpha', 'options'])
    bucket = v.get('bucket')
    key = v.get('key')
    if not isinstance(bucket, str) or bucket == '':
      raise InvalidEdit('overlayWith requires a bucket')
    if not isinstance(key, str) or key == '':
      raise InvalidEdit('overlayWith requires a key')
    options = _object(v.get('options', {}), 'overlayWith.options', ['left', 'top'])

    def ratio(name: str) -> Optional[float]:
      value = v.get(name)
      if value is None:
        return None
      if isinstance(value, str):
        try:
          value = float(value)
        except ValueError:
          raise InvalidEdit(f'overlayWith.{name} must be a number: {value!r}')
      return _number(value, f'overlayWith.{name}', 0, 100)

    return cls(
        bucket=bucket,
        key=key,
        w_ratio=ratio('wRatio'),
        h_ratio=ratio('hRatio'),
        alpha=ratio('alpha'),
        left=None if options.get('left') is None else _int(options['left'], 'overlayWith.left'),
        top=None if options.get('top') is None else _int(options['top'], 'overlayWith.top'))

  def to_json(self) -> dict[str, Any]:
    options = _drop_none({'left': self.left, 'top': self.top})
    return _drop_none({
        'bucket': self.bucket,
        'key': self.key,
        'wRatio': self.w_ratio,
        'hRatio': self.h_ratio,
        'alpha': self.alpha,
        'options': options if len(options) != 0 else None,
    })


DEFAULT_MIN_CONFIDENCE = 75.0
DEFAULT_MODERATION_BLUR = 50.0


@dataclasses.dataclass(eq=True, frozen=True)
class ContentModeration:
  kind: ClassVar[OperationKind] = OperationKind.CONTENT_MODERATION

  min_confidence: float = DEFAULT_MIN_CONFIDENCE
  blur: float = DEFAULT_MODERATION_BLUR
  # Empty means any label triggers the blur.
  moderation_labels: tuple[str, ...] = ()

  @classmethod
  def from_json(cls, value: Any) -> Optional[Self]:
    if value is False:
      return None
    if value is True:
      return cls()
    v = _object(value, 'contentModeration', ['minConfidence', 'blur', 'moderationLabels'])
    labels = v.get('moderationLabels', [])
    if not isinstance(labels, list) or not all(isinstance(l, str) for l in labels):
      raise InvalidEdit('contentModeration.moderationLabels must be a list of strings')
    return cls(
        min_confidence=_number(
            v.get('minConfidence', DEFAULT_MIN_CONFIDENCE), 'contentModeration.minConfidence', 0,
            100),
        blur=_number(
            v.get('blur', DEFAULT_MODERATION_BLUR), 'contentModeration.blur', 0.3, 1000),
        moderation_labels=tuple(labels))

  def to_json(self) -> dict[str, Any]:
    return {
        'minConfidence': self.min_confidence,
        'blur': self.blur,
        'moderationLabels': list(self.moderation_labels),
    }


@dataclasses.dataclass(eq=True, frozen=True)
class ToFormat:
  kind: ClassVar[OperationKind] = OperationKind.TO_FORMAT

  format: Format

  @classmethod
  def from_json(cls, value: Any) -> Self:
    return cls(Format.parse(value))

  def to_json(self) -> str:
    return self.format.value


@dataclasses.dataclass(eq=True, frozen=True)
class Flatten:
  kind: ClassVar[OperationKind] = OperationKind.FLATTEN

  background: Color

  @classmethod
  def from_json(cls, value: Any) -> Self:
    v = _object(value, 'flatten', ['background'])
    if 'background' not in v:
      raise InvalidEdit('flatten requires a background')
    return cls(Color.from_json(v['background'], 'flatten.background'))

  def to_json(self) -> dict[str, Any]:
    return {'background': self.background.to_json()}


@dataclasses.dataclass(eq=True, frozen=True)
class Blur:
  kind: ClassVar[OperationKind] = OperationKind.BLUR

  sigma: Optional[float] = None

  @classmethod
  def from_json(cls, value: Any) -> Optional[Self]:
    if value is False:
      return None
    if value is True:
      return cls()
    return cls(_number(value, 'blur', 0.3, 1000))

  def to_json(self) -> float | bool:
    return True if self.sigma is None else self.sigma


@dataclasses.dataclass(eq=True, frozen=True)
class Convolve:
  kind: ClassVar[OperationKind] = OperationKind.CONVOLVE

  width: int
  height: int
  kernel: tuple[float, ...]

  @classmethod
  def from_json(cls, value: Any) -> Self:
    v = _object(value, 'convolve', ['width', 'height', 'kernel'])
    try:
      width = _int(v['width'], 'convolve.width', 1, 1001)
      height = _int(v['height'], 'convolve.height', 1, 1001)
      kernel = v['kernel']
    except KeyError as e:
      raise InvalidEdit(f'convolve requires {e}')
    if not isinstance(kernel, list):
      raise InvalidEdit('convolve.kernel must be a list')
    if len(kernel) != width * height:
      raise InvalidEdit(f'convolve.kernel must have {width * height} entries')
    return cls(width, height, tuple(_number(k, 'convolve.kernel') for k in kernel))

  def to_json(self) -> dict[str, Any]:
    return {'width': self.width, 'height': self.height, 'kernel': list(self.kernel)}

  def rows(self) -> list[list[float]]:
    return [list(self.kernel[i * self.width:(i + 1) * self.width]) for i in range(self.height)]


@dataclasses.dataclass(eq=True, frozen=True)
class Normalize:
  kind: ClassVar[OperationKind] = OperationKind.NORMALIZE

  @classmethod
  def from_json(cls, value: Any) -> Optional[Self]:
    if not isinstance(value, bool):
      raise InvalidEdit('normalize must be a boolean')
    return cls() if value else None

  def to_json(self) -> bool:
    return True


@dataclasses.dataclass(eq=True, frozen=True)
class Grayscale:
  kind: ClassVar[OperationKind] = OperationKind.GRAYSCALE

  @classmethod
  def from_json(cls, value: Any) -> Optional[Self]:
    if not isinstance(value, bool):
      raise InvalidEdit('grayscale must be a boolean')
    return cls() if value else None

  def to_json(self) -> bool:
    return True


@dataclasses.dataclass(eq=True, frozen=True)
class Tint:
  kind: ClassVar[OperationKind] = OperationKind.TINT

  color: Color

  @classmethod
  def from_json(cls, value: Any) -> Self:
    return cls(Color.from_json(value, 'tint'))

  def to_json(self) -> dict[str, Any]:
    return self.color.to_json()


@dataclasses.dataclass(eq=True, frozen=True)
class Sharpen:
  kind: ClassVar[OperationKind] = OperationKind.SHARPEN

  sigma: Optional[float] = None

  @classmethod
  def from_json(cls, value: Any) -> Optional[Self]:
    if value is False:
      return None
    if value is True:
      return cls()
    return cls(_number(value, 'sharpen', 0.000001, 10))

  def to_json(self) -> float | bool:
    return True if self.sigma is None else self.sigma


Edit = Union[Resize, Crop, SmartCrop, RoundCrop, Rotate, OverlayWith, ContentModeration, ToFormat,
             Flatten, Blur, Convolve, Normalize, Grayscale, Tint, Sharpen]

EDIT_TYPES: dict[OperationKind, Any] = {
    t.kind: t for t in [
        Resize, Crop, SmartCrop, RoundCrop, Rotate, OverlayWith, ContentModeration, ToFormat,
        Flatten, Blur, Convolve, Normalize, Grayscale, Tint, Sharpen
    ]
}


@dataclasses.dataclass(eq=True, frozen=True)
class EditSpecification:
  edits: tuple[Edit, ...] = ()

  @classmethod
  def of(cls, edits: Iterable[Edit]) -> Self:
    """Build a specification, keeping only the last format conversion."""
    result: list[Edit] = []
    for edit in edits:
      existing = [e for e in result if e.kind == edit.kind]
      if len(existing) != 0:
        if edit.kind != OperationKind.TO_FORMAT:
          raise InvalidEdit(f'duplicate edit: {edit.kind.value}')
        result.remove(existing[0])
      result.append(edit)
    return cls(tuple(result))

  @classmethod
  def from_pairs(cls, pairs: Iterable[tuple[str, Any]]) -> Self:
    edits: list[Edit] = []
    for name, value in pairs:
      try:
        kind = OperationKind(name)
      except ValueError:
        raise InvalidEdit(f'unknown edit: {name}')
      edit = EDIT_TYPES[kind].from_json(value)
      if edit is not None:
        edits.append(edit)
    return cls.of(edits)

  @classmethod
  def from_json(cls, value: Any) -> Self:
    if value is None:
      return cls()
    if isinstance(value, list) and all(isinstance(p, tuple) for p in value):
      # Decoded with duplicate keys preserved.
      return cls.from_pairs(value)
    if not isinstance(value, dict):
      raise InvalidEdit('edits must be an object')
    return cls.from_pairs(value.items())

  def to_json(self) -> dict[str, Any]:
    return {e.kind.value: e.to_json() for e in self.edits}

  def get(self, kind: OperationKind) -> Optional[Edit]:
    for e in self.edits:
      if e.kind == kind:
        return e
    return None

  def __contains__(self, kind: object) -> bool:
    return any(e.kind == kind for e in self.edits)

  def __iter__(self) -> Iterator[Edit]:
    return iter(self.edits)

  def __len__(self) -> int:
    return len(self.edits)

  @property
  def to_format(self) -> Optional[Format]:
    edit = self.get(OperationKind.TO_FORMAT)
    return edit.format if isinstance(edit, ToFormat) else None
