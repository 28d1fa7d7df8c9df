import dataclasses
from typing import Optional, Self

from imghandler.edits import Format
from imghandler.imagerequest.index import RequestInfo

NEGOTIABLE_FORMATS = [Format.WEBP]


class AcceptHeader:
  types: dict[Format, bool]

  def __init__(self, types: dict[Format, bool]):
    self.types = types

  @classmethod
  def from_str(cls, accept_header: str) -> Self:
    lowered = accept_header.lower()
    return cls({fmt: fmt.mime in lowered for fmt in NEGOTIABLE_FORMATS})

  def supports(self, fmt: Format) -> bool:
    return self.types.get(fmt, False)


@dataclasses.dataclass(eq=True, frozen=True)
class Output:
  # None keeps the source format.
  format: Optional[Format]
  content_type: str
  effort: Optional[int] = None


def clamp_effort(fmt: Format, effort: int) -> Optional[int]:
  effort_range = fmt.effort_range
  if effort_range is None:
    return None
  lower, upper = effort_range
  return max(lower, min(upper, effort))


def negotiate(
    request_info: RequestInfo,
    accept: AcceptHeader,
    auto_webp: bool,
    default_effort: int,
) -> Output:
  """Decide the output format and its content type.

  An explicit output format (request field or toFormat edit) always wins.
  Otherwise WebP is chosen when automatic negotiation is enabled and the
  client accepts it. The reduction effort is clamped to the range accepted
  by the chosen encoder.
  """
  fmt = request_info.output_format or request_info.edits.to_format
  if fmt is None and auto_webp and accept.supports(Format.WEBP):
    fmt = Format.WEBP

  if fmt is None:
    return Output(format=None, content_type=request_info.content_type)

  effort = request_info.reduction_effort
  return Output(
      format=fmt,
      content_type=fmt.mime,
      effort=clamp_effort(fmt, default_effort if effort is None else effort))
