import dataclasses
import math
from typing import Optional

from imghandler.clients import (
    AnalysisError,
    FaceDetail,
    ImageAnalysisService,
    NoAnalyzableContent,
    ObjectNotFound,
    ObjectStore,
    ObjectStoreError
)
from imghandler.config import Settings
from imghandler.edits import (
    Blur,
    ContentModeration,
    Crop,
    Edit,
    EditSpecification,
    OperationKind,
    OverlayWith,
    Resize,
    Rotate,
    RoundCrop,
    SmartCrop,
    ToFormat
)
from imghandler.errors import ErrorKind, ImageHandlerError
from imghandler.imagehandler.negotiation import Output
from imghandler.imagehandler.ops import (
    Composite,
    DecodeError,
    EllipseMask,
    Encode,
    ImageInfo,
    ImageProcessor,
    InvalidOperation,
    Primitive,
    ProcessingError
)
from imghandler.imagerequest.index import RequestInfo
from imghandler.log import ContextLogger

# Lambda limits a synchronous response payload to 6 MB.
MAX_RESPONSE_BODY_SIZE = 6 * 1024 * 1024

CANONICAL_STAGES: dict[OperationKind, int] = {
    OperationKind.CONTENT_MODERATION: 0,
    OperationKind.SMART_CROP: 1,
    OperationKind.ROUND_CROP: 2,
    OperationKind.CROP: 3,
    OperationKind.RESIZE: 4,
    OperationKind.ROTATE: 5,
    OperationKind.OVERLAY_WITH: 6,
    OperationKind.FLATTEN: 7,
    OperationKind.BLUR: 7,
    OperationKind.CONVOLVE: 7,
    OperationKind.NORMALIZE: 7,
    OperationKind.GRAYSCALE: 7,
    OperationKind.TINT: 7,
    OperationKind.SHARPEN: 7,
    OperationKind.TO_FORMAT: 8,
}


def canonical_order(edits: EditSpecification) -> list[Edit]:
  # sorted() is stable, so pixel filters keep their request order.
  return sorted(edits, key=lambda e: CANONICAL_STAGES[e.kind])


def base64_size(n: int) -> int:
  return 4 * ((n + 2) // 3)


@dataclasses.dataclass(eq=True, frozen=True)
class Size:
  width: int
  height: int

  @classmethod
  def from_info(cls, info: ImageInfo) -> 'Size':
    return cls(info.width, info.height)


@dataclasses.dataclass(eq=True, frozen=True)
class BoundingBox:
  left: int
  top: int
  width: int
  height: int

  @classmethod
  def from_face(cls, face: FaceDetail, frame: Size) -> 'BoundingBox':
    left = math.floor(face.left * frame.width)
    top = math.floor(face.top * frame.height)
    right = math.ceil((face.left + face.width) * frame.width)
    bottom = math.ceil((face.top + face.height) * frame.height)
    return cls(left, top, right - left, bottom - top)

  @property
  def right(self) -> int:
    return self.left + self.width

  @property
  def bottom(self) -> int:
    return self.top + self.height

  def pad(self, percent: float) -> 'BoundingBox':
    """Grow the box by a percentage of its own size on every side."""
    dx = round(self.width * percent / 100)
    dy = round(self.height * percent / 100)
    return BoundingBox(self.left - dx, self.top - dy, self.width + 2 * dx, self.height + 2 * dy)

  def clamp(self, frame: Size) -> 'BoundingBox':
    left = min(max(0, self.left), frame.width - 1)
    top = min(max(0, self.top), frame.height - 1)
    right = max(min(frame.width, self.right), left + 1)
    bottom = max(min(frame.height, self.bottom), top + 1)
    return BoundingBox(left, top, right - left, bottom - top)

  def to_crop(self) -> Crop:
    return Crop(left=self.left, top=self.top, width=self.width, height=self.height)


class ImageHandler:
  """Edit pipeline executor.

  Walks the edit specification in canonical order, rewrites data-dependent
  edits into primitive operations and hands them to the image processing
  library. Every collaborator failure leaves as an ImageHandlerError.
  """

  def __init__(
      self,
      log: ContextLogger,
      settings: Settings,
      store: ObjectStore,
      analysis: ImageAnalysisService,
      processor: ImageProcessor,
  ):
    self.log = log
    self.settings = settings
    self.store = store
    self.analysis = analysis
    self.processor = processor

  def image_info(self, image: bytes) -> ImageInfo:
    try:
      return self.processor.info(image)
    except (DecodeError, ProcessingError) as e:
      self.log.error('failed to read the image', {'reason': str(e)})
      raise ImageHandlerError.internal()

  def analyzable(self, image: bytes) -> bytes:
    try:
      return self.processor.to_analyzable(image)
    except (DecodeError, ProcessingError) as e:
      self.log.error('failed to prepare the image for analysis', {'reason': str(e)})
      raise ImageHandlerError.internal()

  def face_not_found(self, message: str) -> ImageHandlerError:
    return ImageHandlerError.of(
        ErrorKind.SMART_CROP_FACE_NOT_FOUND, message, self.settings.smart_crop_not_found_status)

  def detect_faces(self, image: bytes) -> list[FaceDetail]:
    try:
      return self.analysis.detect_faces(self.analyzable(image))
    except NoAnalyzableContent as e:
      self.log.warning('no content to detect faces in', {'reason': str(e)})
      return []
    except AnalysisError as e:
      self.log.error('face detection failed', {'reason': str(e)})
      raise ImageHandlerError.internal()

  def smart_crop(self, edit: SmartCrop, image: bytes, frame: Size) -> Crop:
    faces = self.detect_faces(image)

    if len(faces) == 0:
      if self.settings.smart_crop_full_image_fallback:
        self.log.debug('no face detected, cropping to the full image')
        return Crop(left=0, top=0, width=frame.width, height=frame.height)
      raise self.face_not_found('No face was detected in the image.')

    if edit.face_index is None:
      face = max(faces, key=lambda f: f.confidence)
    elif edit.face_index < len(faces):
      face = faces[edit.face_index]
    else:
      raise self.face_not_found(
          f'The face index {edit.face_index} exceeds the {len(faces)} detected face(s).')

    box = BoundingBox.from_face(face, frame).pad(edit.padding).clamp(frame)
    self.log.debug('smart crop', {'face': dataclasses.asdict(face), 'box': dataclasses.asdict(box)})
    return box.to_crop()

  def moderate(self, edit: ContentModeration, image: bytes) -> Optional[Blur]:
    try:
      labels = self.analysis.detect_moderation_labels(
          self.analyzable(image), edit.min_confidence)
    except NoAnalyzableContent as e:
      self.log.warning('no content to moderate', {'reason': str(e)})
      return None
    except AnalysisError as e:
      self.log.error('content moderation failed', {'reason': str(e)})
      raise ImageHandlerError.internal()

    for label in labels:
      if label.confidence < edit.min_confidence:
        continue
      if len(edit.moderation_labels) == 0 or label.name in edit.moderation_labels:
        self.log.debug('moderation label found', {'label': label.name})
        return Blur(math.ceil(edit.blur))

    return None

  def round_crop(self, edit: RoundCrop, frame: Size) -> EllipseMask:
    radius = min(frame.width, frame.height) / 2
    return EllipseMask(
        cx=frame.width / 2 if edit.left is None else edit.left,
        cy=frame.height / 2 if edit.top is None else edit.top,
        rx=radius if edit.rx is None else edit.rx,
        ry=radius if edit.ry is None else edit.ry)

  def overlay(self, edit: OverlayWith) -> Composite:
    try:
      overlay = self.store.get(edit.bucket, edit.key)
    except ObjectNotFound:
      raise ImageHandlerError.of(
          ErrorKind.IMAGE_NOT_FOUND, f'The overlay image could not be found: {edit.key}')
    except ObjectStoreError as e:
      self.log.error('failed to get the overlay image', {'reason': str(e)})
      raise ImageHandlerError.internal()

    return Composite(
        image=overlay.body,
        w_ratio=edit.w_ratio,
        h_ratio=edit.h_ratio,
        alpha=edit.alpha,
        left=edit.left,
        top=edit.top)

  def plan(self, request_info: RequestInfo) -> list[Primitive]:
    """Rewrite the edit specification into primitive operations."""
    image = request_info.original_image
    frame: Optional[Size] = None

    def current_frame() -> Size:
      nonlocal frame
      if frame is None:
        frame = Size.from_info(self.image_info(image))
      return frame

    ops: list[Primitive] = []
    for edit in canonical_order(request_info.edits):
      match edit:
        case ContentModeration():
          blur = self.moderate(edit, image)
          if blur is not None:
            ops.append(blur)
        case SmartCrop():
          crop = self.smart_crop(edit, image, current_frame())
          ops.append(crop)
          frame = Size(crop.width, crop.height)
        case RoundCrop():
          ops.append(self.round_crop(edit, current_frame()))
        case Crop():
          f = current_frame()
          if f.width < edit.left + edit.width or f.height < edit.top + edit.height:
            raise ImageHandlerError.of(
                ErrorKind.INVALID_REQUEST,
                'The cropping area you provided exceeds the boundaries of the image.')
          ops.append(edit)
          frame = Size(edit.width, edit.height)
        case OverlayWith():
          ops.append(self.overlay(edit))
        case ToFormat():
          pass
        case Resize() | Rotate():
          ops.append(edit)
          frame = None
        case _:
          ops.append(edit)

    return ops

  def apply(self, request_info: RequestInfo, ops: list[Primitive], output: Output) -> bytes:
    fmt = output.format
    if fmt is None:
      fmt = self.image_info(request_info.original_image).format
      if fmt is None:
        raise ImageHandlerError.of(
            ErrorKind.UNSUPPORTED_FORMAT, 'The source image format cannot be re-encoded.')

    # Format conversion is always the last operation.
    ops = [*ops, Encode(fmt, output.effort)]
    self.log.debug('pipeline', {'ops': [type(op).__name__ for op in ops]})

    try:
      return self.processor.apply(request_info.original_image, ops)
    except InvalidOperation as e:
      raise ImageHandlerError.of(ErrorKind.INVALID_REQUEST, str(e))
    except (DecodeError, ProcessingError) as e:
      self.log.error('failed to process the image', {'reason': str(e)})
      raise ImageHandlerError.internal()

  def process(self, request_info: RequestInfo, output: Output) -> bytes:
    ops = self.plan(request_info)

    if len(ops) == 0 and output.format is None:
      processed = request_info.original_image
    else:
      processed = self.apply(request_info, ops, output)

    if MAX_RESPONSE_BODY_SIZE < base64_size(len(processed)):
      raise ImageHandlerError.of(
          ErrorKind.TOO_LARGE_IMAGE,
          'The converted image is too large to return. Please reduce the image size.')

    return processed

  def run(self, request_info: RequestInfo, output: Output) -> bytes | ImageHandlerError:
    try:
      return self.process(request_info, output)
    except ImageHandlerError as e:
      return e
    except Exception as e:
      self.log.error('unexpected error while processing the image', {'reason': str(e)},
                     exc_info=True)
      return ImageHandlerError.internal()
