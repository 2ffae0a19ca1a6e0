import dataclasses
import datetime
import hashlib
import logging
import os
import re
import sys
from contextlib import ExitStack
from enum import Enum
from http import HTTPStatus
from logging import Logger
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Any, Iterable, Iterator, Optional, Protocol
from urllib import parse

from pythonjsonlogger.jsonlogger import JsonFormatter

import imgthumb
from imgthumb.typing import Headers, HttpPath, HttpRequest, HttpResponse

CHUNK_SIZE = 8192
SHA1_HEX_LENGTH = 40
TEMP_PREFIX = 'imgthumb-'

RENDER_METHODS = ('GET', 'HEAD')
OPTION_TOKENS = ('raw',)


class Gravity(Enum):
  NORTHWEST = 'nw'
  NORTH = 'n'
  NORTHEAST = 'ne'
  WEST = 'w'
  CENTER = 'c'
  EAST = 'e'
  SOUTHWEST = 'sw'
  SOUTH = 's'
  SOUTHEAST = 'se'


th_base_re = (
    r'_(?P<dim>[0-9]+x|x[0-9]+|[0-9]+xx?[0-9]+)'
    f'(?:-(?P<grav>{"|".join(g.value for g in Gravity)}))?'
    f'(?:-(?P<opt>{"|".join(OPTION_TOKENS)}))?')
th_ext_re = r'(?P<ext>(?i:\.(?:jpg|jpeg|png|gif)))'
dimension_re = re.compile(r'(\d*)x(x?)(\d*)')


class MyJsonFormatter(JsonFormatter):

  def __init__(self) -> None:
    super().__init__(json_ensure_ascii=False)

  def add_fields(self, log_record: Any, record: Any, message_dict: Any) -> None:
    log_record['_ts'] = datetime.datetime.now(datetime.UTC).strftime('%Y-%m-%dT%H:%M:%S.%fZ')

    if log_record.get('level'):
      log_record['level'] = log_record['level'].upper()
    else:
      log_record['level'] = record.levelname

    log_record['version'] = imgthumb.version

    super().add_fields(log_record, record, message_dict)


def init_logging() -> Logger:
  log = logging.getLogger(__name__)
  log.setLevel(logging.DEBUG)
  log_handler = logging.StreamHandler()
  log_handler.setFormatter(MyJsonFormatter())
  log_handler.setLevel(logging.DEBUG)
  log_handler.setStream(sys.stderr)
  log.addHandler(log_handler)
  log.propagate = False

  return log


logger = init_logging()


class InvalidConfig(Exception):
  pass


class RenderError(Exception):
  pass


@dataclasses.dataclass(eq=True, frozen=True)
class RouteConfig:
  urls: tuple[str, ...] = ('/',)
  prefix: Optional[str] = None
  secret: Optional[str] = None
  keylength: Optional[int] = None
  crop: Optional[bool] = None
  preserve_metadata: bool = False
  write: bool = False
  ttl: Optional[int] = None

  def __post_init__(self) -> None:
    # Keeps the config hashable when urls are given as a list.
    object.__setattr__(self, 'urls', tuple(self.urls))

    if len(self.urls) == 0:
      raise InvalidConfig('at least one url is required')

    if (self.secret is None) != (self.keylength is None):
      raise InvalidConfig('secret and keylength must be given together')

    if self.keylength is not None and not 0 < self.keylength <= SHA1_HEX_LENGTH:
      raise InvalidConfig(f'keylength out of range: {self.keylength}')

    if self.ttl is not None and self.ttl < 0:
      raise InvalidConfig(f'negative ttl: {self.ttl}')


def generate_routes(config: RouteConfig) -> tuple[re.Pattern[str], ...]:
  prefix = '' if config.prefix is None else re.escape(config.prefix)
  # Any token is taken as the signature; verification rejects malformed ones.
  key = '' if config.keylength is None else r'(?:-(?P<sig>[^/]+))?'

  routes = []
  for url in config.urls:
    url = '' if url == '/' else re.escape(url)
    routes.append(re.compile(rf'^{prefix}(?P<base>{url}.+){th_base_re}{key}{th_ext_re}\Z'))

  return tuple(routes)


@dataclasses.dataclass(frozen=True)
class MatchResult:
  base: str
  dimension: str
  gravity: Optional[str]
  options: tuple[str, ...]
  signature: Optional[str]
  extension: str

  @classmethod
  def from_match(cls, m: re.Match[str]) -> 'MatchResult':
    groups = m.groupdict()
    opt = groups['opt']

    return cls(
        base=groups['base'],
        dimension=groups['dim'],
        gravity=groups['grav'],
        options=() if opt is None else tuple(opt.split('-')),
        signature=groups.get('sig'),
        extension=groups['ext'])

  @property
  def source(self) -> HttpPath:
    return HttpPath(self.base + self.extension)


def calc_signature(meta: MatchResult, secret: str, keylength: int) -> str:
  gravity = '' if meta.gravity is None else f'-{meta.gravity}'
  options = ''.join(f'-{o}' for o in meta.options)
  canonical = f'{meta.base}_{meta.dimension}{gravity}{options}{meta.extension}{secret}'
  return hashlib.sha1(canonical.encode()).hexdigest()[:keylength]


def verify_signature(meta: MatchResult, secret: str, keylength: int) -> bool:
  # Plain string comparison: signatures mark links generated by the deployer
  # and are not timing-resistant.
  if meta.signature is None:
    return False

  return meta.signature == calc_signature(meta, secret, keylength)


class Rejection(Enum):
  SIGNATURE_INVALID = 'invalid signature'
  MALFORMED_DIMENSION = 'malformed dimension'


@dataclasses.dataclass(eq=True, frozen=True)
class Dimensions:
  width: Optional[int]
  height: Optional[int]
  crop: bool


def parse_dimensions(token: str, crop: Optional[bool] = None) -> Dimensions | Rejection:
  """Parses a dimension token such as ``50x``, ``x50``, ``50x50`` or ``50xx50``.

  A single ``x`` between two sizes asks for an exact crop, a doubled ``xx`` for a
  bounded fit. ``crop`` overrides that when it is not ``None``.
  """
  m = dimension_re.fullmatch(token)
  if m is None:
    return Rejection.MALFORMED_DIMENSION

  if crop is None:
    crop = m[2] == ''

  axes: list[Optional[int]] = []
  for digits in (m[1], m[3]):
    if digits == '':
      axes.append(None)
    elif digits.startswith('0'):
      return Rejection.MALFORMED_DIMENSION
    else:
      axes.append(int(digits))

  width, height = axes
  if width is None and height is None:
    return Rejection.MALFORMED_DIMENSION

  return Dimensions(width=width, height=height, crop=crop)


def parse_gravity(token: Optional[str]) -> Gravity:
  return Gravity.CENTER if token is None else Gravity(token)


def parse_options(tokens: tuple[str, ...]) -> bool:
  """Returns whether ``raw`` was requested."""
  return 'raw' in tokens


@dataclasses.dataclass(eq=True, frozen=True)
class RenderSpec:
  width: Optional[int]
  height: Optional[int]
  crop: bool
  gravity: Gravity = Gravity.CENTER
  raw: bool = False


@dataclasses.dataclass(eq=True, frozen=True)
class Size:
  width: int
  height: int


@dataclasses.dataclass(eq=True, frozen=True)
class RenderPlan:
  width: Optional[int]
  height: Optional[int]
  crop: bool
  gravity: Gravity
  orient: bool
  strip: bool


def plan_render(
    spec: RenderSpec,
    intrinsic: Size,
    preserve_metadata: bool = False,
    supports_orient: bool = True,
    supports_strip: bool = True,
) -> RenderPlan:
  # Never upscale.
  width = None if spec.width is None else min(spec.width, intrinsic.width)
  height = None if spec.height is None else min(spec.height, intrinsic.height)

  normalize = not spec.raw

  return RenderPlan(
      width=width,
      height=height,
      crop=spec.crop and width is not None and height is not None,
      gravity=spec.gravity,
      orient=normalize and supports_orient,
      strip=normalize and not preserve_metadata and supports_strip)


class ImageProcessor(Protocol):
  supports_orient: bool
  supports_strip: bool

  def info(self, path: str, orient: bool) -> Size:
    """Size of the image as displayed, after auto-rotation when ``orient`` is set."""
    ...

  def transform(self, source: str, plan: RenderPlan, output: str) -> None:
    ...


class OriginHandler(Protocol):

  def __call__(self, req: HttpRequest) -> HttpResponse:
    ...


class FileBody:
  """Response body backed by a file on disk.

  Origins that serve files return this so the file can be handed to the image
  processor as is. ``root`` is the document root the file was served from.
  """
  path: str
  root: Optional[str]

  def __init__(self, path: str | Path, root: Optional[str | Path] = None):
    self.path = str(path)
    self.root = None if root is None else str(root)

  def __iter__(self) -> Iterator[bytes]:
    with open(self.path, 'rb') as f:
      while chunk := f.read(CHUNK_SIZE):
        yield chunk


class FileStream(FileBody):
  """Streams a rendered thumbnail and releases the request's resources when done."""
  resources: ExitStack

  def __init__(self, path: str | Path, resources: ExitStack):
    super().__init__(path)
    self.resources = resources

  def __iter__(self) -> Iterator[bytes]:
    try:
      yield from super().__iter__()
    finally:
      self.close()

  def close(self) -> None:
    self.resources.close()


def close_body(body: Iterable[bytes]) -> None:
  close = getattr(body, 'close', None)
  if close is not None:
    close()


def get_header(headers: Headers, name: str) -> Optional[str]:
  name = name.lower()
  for k, v in headers.items():
    if k.lower() == name:
      return v
  return None


def without_header(headers: Headers, name: str) -> Headers:
  name = name.lower()
  return {k: v for k, v in headers.items() if k.lower() != name}


def is_image_response(res: HttpResponse) -> bool:
  if not HTTPStatus.OK <= res['status'] < HTTPStatus.MULTIPLE_CHOICES:
    return False

  content_type = get_header(res['headers'], 'content-type')
  if content_type is None:
    return False

  return content_type.split('/', 1)[0].strip().lower() == 'image'


def resolve_under(root: str | Path, path: str) -> Optional[Path]:
  base = Path(root).resolve()
  target = (base / parse.unquote(path).lstrip('/')).resolve()
  if target == base or base not in target.parents:
    return None
  return target


def bad_request(path: HttpPath) -> HttpResponse:
  body = f'Bad thumbnail parameters in {path}\n'.encode()
  return {
      'status': HTTPStatus.BAD_REQUEST,
      'headers': {
          'Content-Type': 'text/plain',
          'Content-Length': str(len(body)),
      },
      'body': [body],
  }


@dataclasses.dataclass(frozen=True)
class Passthrough:
  reason: str


@dataclasses.dataclass(frozen=True)
class SourceImage:
  path: Optional[str]
  headers: Headers
  root: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class RenderedThumbnail:
  path: str
  size: int


class ThumbRequest:
  """State of a single thumbnail request. Never shared between requests."""

  def __init__(self, log: Logger, req: HttpRequest):
    self.log = log
    self.method = req['method']
    self.path = req['path']
    self.resources = ExitStack()
    self.log_context = {'method': self.method, 'path': str(self.path)}

  @property
  def head(self) -> bool:
    return self.method == 'HEAD'

  def temp_file_path(self, suffix: str) -> str:
    f = self.resources.enter_context(
        NamedTemporaryFile(prefix=TEMP_PREFIX, suffix=suffix, delete_on_close=False))
    f.close()
    return f.name

  def log_warning(self, message: str, dict: dict[str, Any]) -> None:
    self.log.warning({
        'message': message,
        **self.log_context,
        **dict,
    })

  def log_debug(self, message: str, dict: dict[str, Any]) -> None:
    self.log.debug({
        'message': message,
        **self.log_context,
        **dict,
    })

  def log_error(self, message: str, dict: dict[str, Any]) -> None:
    self.log.error({
        'message': message,
        **self.log_context,
        **dict,
    })


class ThumbServer:

  def __init__(
      self,
      log: Logger,
      config: RouteConfig,
      origin: OriginHandler,
      processor: ImageProcessor,
  ):
    self.log = log
    self.config = config
    self.origin = origin
    self.processor = processor
    self.routes = generate_routes(config)
    self.supports_orient = processor.supports_orient
    self.supports_strip = processor.supports_strip
    self.cache_control = None if config.ttl is None else f'public, max-age={config.ttl}'

  def match(self, path: HttpPath) -> Optional[MatchResult]:
    for route in self.routes:
      m = route.match(path)
      if m is not None:
        return MatchResult.from_match(m)
    return None

  def check(self, meta: MatchResult) -> RenderSpec | Rejection:
    if self.config.secret is not None and self.config.keylength is not None:
      if not verify_signature(meta, self.config.secret, self.config.keylength):
        return Rejection.SIGNATURE_INVALID

    match parse_dimensions(meta.dimension, self.config.crop):
      case Rejection() as rejection:
        return rejection
      case Dimensions() as dims:
        return RenderSpec(
            width=dims.width,
            height=dims.height,
            crop=dims.crop,
            gravity=parse_gravity(meta.gravity),
            raw=parse_options(meta.options))
      case _:
        raise Exception('system error')

  def fetch_source(
      self,
      ctx: ThumbRequest,
      req: HttpRequest,
      meta: MatchResult,
  ) -> SourceImage | HttpResponse:
    source_req = req.copy()
    source_req['path'] = meta.source
    res = self.origin(source_req)

    if not is_image_response(res):
      ctx.log_debug(
          'relaying origin response', {
              'source': meta.source,
              'status': res['status'],
              'content_type': get_header(res['headers'], 'content-type'),
          })
      return res

    body = res['body']

    if ctx.head:
      close_body(body)
      return SourceImage(path=None, headers=res['headers'])

    if isinstance(body, FileBody):
      return SourceImage(path=body.path, headers=res['headers'], root=body.root)

    orig = ctx.resources.enter_context(
        NamedTemporaryFile(
            prefix=TEMP_PREFIX, suffix=meta.extension.lower(), delete_on_close=False))
    try:
      for chunk in body:
        orig.write(chunk)
    finally:
      close_body(body)
    orig.close()

    return SourceImage(path=orig.name, headers=res['headers'])

  def output_path(self, ctx: ThumbRequest, meta: MatchResult, source: SourceImage) -> str:
    if self.config.write:
      target = None if source.root is None else resolve_under(source.root, ctx.path)
      if target is not None:
        target.parent.mkdir(parents=True, exist_ok=True)
        return str(target)
      ctx.log_warning('cannot write beside source, using temporary file', {'root': source.root})

    return ctx.temp_file_path(meta.extension.lower())

  def render(
      self,
      ctx: ThumbRequest,
      meta: MatchResult,
      spec: RenderSpec,
      source: SourceImage,
  ) -> RenderedThumbnail:
    if source.path is None:
      raise Exception('system error')

    try:
      intrinsic = self.processor.info(source.path, not spec.raw and self.supports_orient)
      plan = plan_render(
          spec, intrinsic, self.config.preserve_metadata, self.supports_orient,
          self.supports_strip)
      output = self.output_path(ctx, meta, source)
      self.processor.transform(source.path, plan, output)
    except RenderError as e:
      ctx.log_error('failed to render', {'reason': str(e), 'source': meta.source})
      raise

    size = os.path.getsize(output)
    ctx.log_debug('rendered', {
        'intrinsic': intrinsic,
        'plan': plan,
        'size': size,
    })

    return RenderedThumbnail(path=output, size=size)

  def thumbnail_headers(self, source: SourceImage) -> Headers:
    headers = without_header(source.headers, 'content-length')

    if self.cache_control is not None:
      headers = without_header(headers, 'cache-control')
      headers['Cache-Control'] = self.cache_control

    return headers

  def assemble_head(self, source: SourceImage) -> HttpResponse:
    # The thumbnail is never rendered for HEAD, so its length is unknown.
    return {
        'status': HTTPStatus.OK,
        'headers': self.thumbnail_headers(source),
        'body': [],
    }

  def assemble(
      self,
      source: SourceImage,
      thumb: RenderedThumbnail,
      resources: ExitStack,
  ) -> HttpResponse:
    headers = self.thumbnail_headers(source)
    headers['Content-Length'] = str(thumb.size)

    return {
        'status': HTTPStatus.OK,
        'headers': headers,
        'body': FileStream(thumb.path, resources),
    }

  def process(self, req: HttpRequest) -> Passthrough | HttpResponse:
    if req['method'] not in RENDER_METHODS:
      return Passthrough(reason='method')

    meta = self.match(req['path'])
    if meta is None:
      return Passthrough(reason='unmatched')

    ctx = ThumbRequest(self.log, req)

    spec = self.check(meta)
    if isinstance(spec, Rejection):
      ctx.log_warning('bad request', {'rejection': spec.value})
      return bad_request(req['path'])

    with ctx.resources:
      fetched = self.fetch_source(ctx, req, meta)
      if not isinstance(fetched, SourceImage):
        return fetched

      if ctx.head:
        return self.assemble_head(fetched)

      thumb = self.render(ctx, meta, spec, fetched)

      # The response body owns the temporary files from here on.
      return self.assemble(fetched, thumb, ctx.resources.pop_all())

  def __call__(self, req: HttpRequest) -> HttpResponse:
    result = self.process(req)

    if isinstance(result, Passthrough):
      self.log.debug({
          'message': 'passthrough',
          'reason': result.reason,
          'method': req['method'],
          'path': str(req['path']),
      })
      return self.origin(req)

    return result
