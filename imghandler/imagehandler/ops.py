"""Primitive operations handed to the image processing library.

Data-dependent edits (smart crop, round crop, content moderation, overlay)
are rewritten into these before any pixel work happens. The remaining
edits are passed through unchanged.
"""

import dataclasses
from typing import Optional, Protocol, Sequence, Union

from imghandler.edits import (
    Blur,
    Convolve,
    Crop,
    Flatten,
    Format,
    Grayscale,
    Normalize,
    Resize,
    Rotate,
    Sharpen,
    Tint
)


class DecodeError(Exception):
  pass


class ProcessingError(Exception):
  pass


class InvalidOperation(ProcessingError):
  """An operation whose parameters do not fit the image it is applied to."""
  pass


@dataclasses.dataclass(eq=True, frozen=True)
class ImageInfo:
  width: int
  height: int
  format: Optional[Format]


@dataclasses.dataclass(eq=True, frozen=True)
class EllipseMask:
  cx: float
  cy: float
  rx: float
  ry: float


@dataclasses.dataclass(eq=True, frozen=True)
class Composite:
  image: bytes = dataclasses.field(repr=False)
  w_ratio: Optional[float] = None
  h_ratio: Optional[float] = None
  alpha: Optional[float] = None
  left: Optional[int] = None
  top: Optional[int] = None


@dataclasses.dataclass(eq=True, frozen=True)
class Encode:
  format: Format
  effort: Optional[int] = None


Primitive = Union[Crop, EllipseMask, Resize, Rotate, Composite, Flatten, Blur, Convolve, Normalize,
                  Grayscale, Tint, Sharpen, Encode]


class ImageProcessor(Protocol):

  def info(self, image: bytes) -> ImageInfo:
    ...

  def apply(self, image: bytes, ops: Sequence[Primitive]) -> bytes:
    ...

  def to_analyzable(self, image: bytes) -> bytes:
    """Return the image in a format accepted by the analysis service."""
    ...
