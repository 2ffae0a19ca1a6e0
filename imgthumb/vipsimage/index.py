import dataclasses
from logging import Logger
from typing import Any, Optional

import pyvips
from pyvips import Error as VipsError
from pyvips import Image  # type: ignore

from imgthumb.thumbnail.index import Gravity, RenderError, RenderPlan, Size

# Saver flag for ForeignKeep.NONE.
KEEP_NONE = 0

# EXIF orientations that swap width and height.
TRANSPOSED_ORIENTATIONS = (5, 6, 7, 8)

HORIZONTAL_ANCHORS = {
    Gravity.NORTHWEST: 0,
    Gravity.WEST: 0,
    Gravity.SOUTHWEST: 0,
    Gravity.NORTHEAST: 2,
    Gravity.EAST: 2,
    Gravity.SOUTHEAST: 2,
}

VERTICAL_ANCHORS = {
    Gravity.NORTHWEST: 0,
    Gravity.NORTH: 0,
    Gravity.NORTHEAST: 0,
    Gravity.SOUTHWEST: 2,
    Gravity.SOUTH: 2,
    Gravity.SOUTHEAST: 2,
}


@dataclasses.dataclass(frozen=True)
class Area:
  x: int
  y: int
  width: int
  height: int

  @classmethod
  def create(cls, x: int, y: int, width: int, height: int) -> 'Area':
    if x < 0 or y < 0 or width < 0 or height < 0:
      raise ValueError(f'Invalid argument: x: {x}, y: {y}, width: {width}, height: {height}')

    return cls(x, y, width, height)

  @property
  def right(self) -> int:
    return self.x + self.width

  @property
  def bottom(self) -> int:
    return self.y + self.height

  def to_size(self) -> Size:
    return Size(self.width, self.height)


def ceildiv(a: int, b: int) -> int:
  return -(a // -b)


def rounddiv(a: int, b: int) -> int:
  return (2 * a + b) // (2 * b)


def size_of(image: Image) -> Size:
  return Size(image.get('width'), image.get('height'))


def orientation_of(image: Image) -> int:
  if image.get_typeof('orientation') == 0:
    return 1
  return image.get('orientation')


def calc_fill(original: Size, target: Size) -> Size:
  """Smallest shrink of ``original`` that covers ``target`` on both axes."""
  width = min(target.width, original.width)
  height = min(target.height, original.height)

  if original.height * width >= original.width * height:
    # Width is the binding axis.
    return Size(width, max(height, ceildiv(original.height * width, original.width)))

  return Size(max(width, ceildiv(original.width * height, original.height)), height)


def calc_fit(original: Size, width: Optional[int], height: Optional[int]) -> Size:
  """Largest shrink of ``original`` that fits within the given bounds."""
  if width is not None and width >= original.width:
    width = None
  if height is not None and height >= original.height:
    height = None

  match (width, height):
    case (None, None):
      return original
    case (int() as w, None):
      return Size(w, max(1, rounddiv(original.height * w, original.width)))
    case (None, int() as h):
      return Size(max(1, rounddiv(original.width * h, original.height)), h)
    case (int() as w, int() as h):
      if original.height * w <= original.width * h:
        return Size(w, max(1, rounddiv(original.height * w, original.width)))
      return Size(max(1, rounddiv(original.width * h, original.height)), h)
    case _:
      raise Exception('system error')


def anchor_offset(space: int, anchor: int) -> int:
  return (space * anchor) // 2


def calc_gravity_area(resized: Size, target: Size, gravity: Gravity) -> Area:
  width = min(target.width, resized.width)
  height = min(target.height, resized.height)

  return Area.create(
      x=anchor_offset(resized.width - width, HORIZONTAL_ANCHORS.get(gravity, 1)),
      y=anchor_offset(resized.height - height, VERTICAL_ANCHORS.get(gravity, 1)),
      width=width,
      height=height)


def resize_to(image: Image, size: Size) -> Image:
  original = size_of(image)
  if original == size:
    return image

  return image.resize(size.width / original.width, vscale=size.height / original.height)


def save_options(strip: bool) -> dict[str, Any]:
  if not strip:
    return {}

  if pyvips.at_least_libvips(8, 15):
    return {'keep': KEEP_NONE}

  return {'strip': True}


class VipsProcessor:
  supports_orient = True
  supports_strip = True

  def __init__(self, log: Logger):
    self.log = log

  def info(self, path: str, orient: bool) -> Size:
    try:
      image: Image = Image.new_from_file(path)
    except VipsError as e:
      raise RenderError(f'cannot read {path}: {e.message}') from e

    size = size_of(image)
    if orient and orientation_of(image) in TRANSPOSED_ORIENTATIONS:
      return Size(size.height, size.width)
    return size

  def crop_resize(self, image: Image, plan: RenderPlan) -> Image:
    if plan.width is None or plan.height is None:
      raise Exception('system error')

    target = Size(plan.width, plan.height)
    image = resize_to(image, calc_fill(size_of(image), target))
    area = calc_gravity_area(size_of(image), target, plan.gravity)

    return image.extract_area(area.x, area.y, area.width, area.height)

  def fit(self, image: Image, plan: RenderPlan) -> Image:
    return resize_to(image, calc_fit(size_of(image), plan.width, plan.height))

  def transform(self, source: str, plan: RenderPlan, output: str) -> None:
    try:
      image: Image = Image.new_from_file(source)

      if plan.orient:
        image = image.autorot()

      if plan.crop:
        image = self.crop_resize(image, plan)
      else:
        image = self.fit(image, plan)

      image.write_to_file(output, **save_options(plan.strip))
    except VipsError as e:
      raise RenderError(f'cannot render {source}: {e.message}') from e

    self.log.debug({
        'message': 'transformed',
        'source': source,
        'output': output,
        'size': size_of(image),
    })
