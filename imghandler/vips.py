from typing import Any, Optional, Sequence, Tuple

from pyvips import Error as VipsError  # type: ignore
from pyvips import Extend, Image, Interesting  # type: ignore

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
    Resize,
    Rotate,
    Sharpen,
    Tint
)
from imghandler.imagehandler.ops import (
    Composite,
    DecodeError,
    EllipseMask,
    Encode,
    ImageInfo,
    InvalidOperation,
    Primitive,
    ProcessingError
)

VIPS_MAX_COORD = 10000000

DEFAULT_BLUR_SIGMA = 1.0

LOADER_FORMATS = {
    'jpegload': Format.JPEG,
    'pngload': Format.PNG,
    'webpload': Format.WEBP,
    'tiffload': Format.TIFF,
    'gifload': Format.GIF,
    'heifload': Format.HEIF,
}

SAVE_SUFFIXES = {
    Format.JPEG: '.jpg',
    Format.PNG: '.png',
    Format.WEBP: '.webp',
    Format.TIFF: '.tif',
    Format.GIF: '.gif',
    Format.HEIF: '.heic',
    Format.AVIF: '.avif',
}

ANALYZABLE_FORMATS = [Format.JPEG, Format.PNG]

POSITION_ALIASES = {
    'north': 'top',
    'south': 'bottom',
    'east': 'right',
    'west': 'left',
    'northeast': 'right top',
    'southeast': 'right bottom',
    'southwest': 'left bottom',
    'northwest': 'left top',
    'center': 'centre',
}


def split_alpha(image: Image) -> Tuple[Image, Optional[Image]]:
  if not image.hasalpha():
    return image, None
  return image.extract_band(0, n=image.bands - 1), image[image.bands - 1]


def join_alpha(image: Image, alpha: Optional[Image]) -> Image:
  return image if alpha is None else image.bandjoin(alpha)


def loader_format(image: Image) -> Optional[Format]:
  loader: str = image.get('vips-loader') if image.get_typeof('vips-loader') != 0 else ''
  fmt = LOADER_FORMATS.get(loader.removesuffix('_buffer').removesuffix('_source'))
  if fmt == Format.HEIF and image.get_typeof('heif-compression') != 0:
    if image.get('heif-compression') == 'av1':
      return Format.AVIF
  return fmt


def cover_offset(space: int, words: set[str], lower: str, upper: str) -> int:
  if lower in words:
    return 0
  if upper in words:
    return space
  return space // 2


class VipsProcessor:
  """Image processing library backed by libvips."""

  def load(self, image: bytes) -> Image:
    try:
      return Image.new_from_buffer(image, '')
    except VipsError as e:
      raise DecodeError(str(e))

  def info(self, image: bytes) -> ImageInfo:
    loaded = self.load(image)
    return ImageInfo(width=loaded.width, height=loaded.height, format=loader_format(loaded))

  def to_analyzable(self, image: bytes) -> bytes:
    loaded = self.load(image)
    if loader_format(loaded) in ANALYZABLE_FORMATS:
      return image
    try:
      return loaded.write_to_buffer('.png')
    except VipsError as e:
      raise ProcessingError(str(e))

  def apply(self, image: bytes, ops: Sequence[Primitive]) -> bytes:
    current = self.load(image)
    try:
      for op in ops:
        match op:
          case Encode():
            return self.encode(current, op)
          case _:
            current = self.transform(current, op)
    except VipsError as e:
      raise ProcessingError(str(e))

    raise ProcessingError('no encode operation')

  def transform(self, image: Image, op: Primitive) -> Image:
    match op:
      case Crop():
        if image.width < op.left + op.width or image.height < op.top + op.height:
          raise InvalidOperation(
              'The cropping area you provided exceeds the boundaries of the image.')
        return image.extract_area(op.left, op.top, op.width, op.height)
      case EllipseMask():
        return self.ellipse_mask(image, op)
      case Resize():
        return self.resize(image, op)
      case Rotate():
        return self.rotate(image, op)
      case Composite():
        return self.composite(image, op)
      case Flatten():
        return image.flatten(background=op.background.rgb()) if image.hasalpha() else image
      case Blur():
        return image.gaussblur(DEFAULT_BLUR_SIGMA if op.sigma is None else op.sigma)
      case Convolve():
        mask = Image.new_from_array(op.rows())
        return image.conv(mask, precision='float').cast(image.format)
      case Normalize():
        return self.normalize(image)
      case Grayscale():
        return image.colourspace('b-w')
      case Tint():
        return self.tint(image, op.color)
      case Sharpen():
        return image.sharpen() if op.sigma is None else image.sharpen(sigma=op.sigma)
      case _:
        raise ProcessingError(f'unknown operation: {type(op).__name__}')

  def ellipse_mask(self, image: Image, op: EllipseMask) -> Image:
    xy = Image.xyz(image.width, image.height)
    dx = (xy[0] - op.cx) / max(op.rx, 1e-6)
    dy = (xy[1] - op.cy) / max(op.ry, 1e-6)
    inside = (dx * dx + dy * dy) <= 1

    rgb, alpha = split_alpha(image)
    if alpha is None:
      return rgb.bandjoin(inside)
    return rgb.bandjoin(alpha & inside)

  def resize(self, image: Image, op: Resize) -> Image:
    iw, ih = image.width, image.height

    if op.width is None or op.height is None:
      scale = op.width / iw if op.width is not None else op.height / ih  # type: ignore
      if op.without_enlargement:
        scale = min(scale, 1.0)
      return image if scale == 1.0 else image.resize(scale)

    hscale = op.width / iw
    vscale = op.height / ih

    if op.fit == Fit.FILL:
      if op.without_enlargement:
        hscale, vscale = min(hscale, 1.0), min(vscale, 1.0)
      return image.resize(hscale, vscale=vscale)

    if op.fit in (Fit.INSIDE, Fit.CONTAIN):
      scale = min(hscale, vscale)
    else:
      scale = max(hscale, vscale)
    if op.without_enlargement:
      scale = min(scale, 1.0)
    if scale != 1.0:
      image = image.resize(scale)

    words = set(POSITION_ALIASES.get(op.position, op.position).split())

    if op.fit == Fit.COVER:
      width = min(op.width, image.width)
      height = min(op.height, image.height)
      if 'entropy' in words or 'attention' in words:
        interesting = Interesting.ENTROPY if 'entropy' in words else Interesting.ATTENTION
        return image.smartcrop(width, height, interesting=interesting)
      return image.extract_area(
          cover_offset(image.width - width, words, 'left', 'right'),
          cover_offset(image.height - height, words, 'top', 'bottom'), width, height)

    if op.fit == Fit.CONTAIN:
      width = max(op.width, image.width)
      height = max(op.height, image.height)
      background: list[float] = [0.0] * image.bands
      if op.background is not None:
        background = (op.background.rgb() + [255.0 * (op.background.alpha or 1.0)])[:image.bands]
      return image.embed(
          cover_offset(width - image.width, words, 'left', 'right'),
          cover_offset(height - image.height, words, 'top', 'bottom'),
          width,
          height,
          extend=Extend.BACKGROUND,
          background=background)

    return image

  def rotate(self, image: Image, op: Rotate) -> Image:
    if op.angle is None:
      return image.autorot()
    angle = op.angle % 360
    if angle == 0:
      return image
    if angle % 90 == 0:
      return image.rot(f'd{angle}')
    return image.rotate(angle)

  def composite(self, image: Image, op: Composite) -> Image:
    overlay = self.load(op.image)

    if op.w_ratio is not None or op.h_ratio is not None:
      width = VIPS_MAX_COORD if op.w_ratio is None else max(
          1, round(image.width * op.w_ratio / 100))
      height = VIPS_MAX_COORD if op.h_ratio is None else max(
          1, round(image.height * op.h_ratio / 100))
      overlay = overlay.thumbnail_image(width, height=height)

    image = image.colourspace('srgb')
    overlay = overlay.colourspace('srgb')
    if not overlay.hasalpha():
      overlay = overlay.bandjoin(255)
    if op.alpha is not None:
      opacity = (100 - op.alpha) / 100
      overlay = (overlay * ([1.0] * (overlay.bands - 1) + [opacity])).cast('uchar')

    def offset(value: Optional[int], base: int, size: int) -> int:
      if value is None:
        return (base - size) // 2
      if value < 0:
        return base + value - size
      return value

    return image.composite2(
        overlay,
        'over',
        x=offset(op.left, image.width, overlay.width),
        y=offset(op.top, image.height, overlay.height)).cast(image.format)

  def normalize(self, image: Image) -> Image:
    rgb, alpha = split_alpha(image)
    lo = rgb.min()
    hi = rgb.max()
    if hi <= lo:
      return image
    stretched = ((rgb - lo) * (255.0 / (hi - lo))).cast('uchar')
    return join_alpha(stretched.copy(interpretation=rgb.interpretation), alpha)

  def tint(self, image: Image, color: Color) -> Image:
    rgb, alpha = split_alpha(image.colourspace('srgb'))
    gray = rgb.colourspace('b-w')[0]
    tinted = (gray * [color.r / 255, color.g / 255, color.b / 255]).cast('uchar')
    return join_alpha(tinted.copy(interpretation='srgb'), alpha)

  def encode(self, image: Image, op: Encode) -> bytes:
    if op.format == Format.JPEG and image.hasalpha():
      image = image.flatten(background=[255.0, 255.0, 255.0])

    kwargs: dict[str, Any] = {}
    if op.effort is not None:
      kwargs['effort'] = op.effort

    return image.write_to_buffer(SAVE_SUFFIXES[op.format], **kwargs)
