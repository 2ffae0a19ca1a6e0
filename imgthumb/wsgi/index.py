import os
from http import HTTPStatus
from logging import Logger
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Optional

from imgthumb.thumbnail.index import (
    FileBody,
    ImageProcessor,
    Passthrough,
    RouteConfig,
    ThumbServer,
    close_body,
    logger
)
from imgthumb.typing import Headers, HttpPath, HttpRequest, HttpResponse
from imgthumb.vipsimage.index import VipsProcessor

Environ = dict[str, Any]
StartResponse = Callable[..., Callable[[bytes], Any]]
WsgiApp = Callable[[Environ, StartResponse], Iterable[bytes]]


def headers_from_environ(environ: Environ) -> Headers:
  headers: Headers = {}
  for k, v in environ.items():
    if k.startswith('HTTP_'):
      headers[k[5:].replace('_', '-').title()] = v
    elif k in ('CONTENT_TYPE', 'CONTENT_LENGTH') and v != '':
      headers[k.replace('_', '-').title()] = v
  return headers


def request_from_environ(environ: Environ) -> HttpRequest:
  return {
      'method': environ.get('REQUEST_METHOD', 'GET'),
      'path': HttpPath(environ.get('PATH_INFO', '')),
      'headers': headers_from_environ(environ),
      'environ': environ,
  }


def status_line(status: int) -> str:
  try:
    return f'{int(status)} {HTTPStatus(status).phrase}'
  except ValueError:
    return str(int(status))


class WsgiBody:
  """Body of a downstream WSGI response, including chunks read ahead of time.

  ``status`` and ``header_list`` are kept as the application passed them to
  ``start_response`` so that a relayed response reaches the client unchanged.
  """

  def __init__(
      self,
      head: list[bytes],
      rest: Iterator[bytes],
      result: Iterable[bytes],
      status: str,
      header_list: list[tuple[str, str]],
  ):
    self.head = head
    self.rest = rest
    self.result = result
    self.status = status
    self.header_list = header_list

  def __iter__(self) -> Iterator[bytes]:
    yield from self.head
    yield from self.rest

  def close(self) -> None:
    close_body(self.result)


class WsgiFileBody(FileBody):
  """File served by a downstream WSGI application through ``wsgi.file_wrapper``."""

  def __init__(
      self,
      path: str | Path,
      root: Optional[str | Path],
      status: str,
      header_list: list[tuple[str, str]],
  ):
    super().__init__(path, root)
    self.status = status
    self.header_list = header_list


def wrapped_file_name(result: Iterable[bytes]) -> Optional[str]:
  name = getattr(getattr(result, 'filelike', None), 'name', None)
  if isinstance(name, str) and os.path.isfile(name):
    return name
  return None


class WsgiOrigin:
  """Calls a downstream WSGI application as the origin of source images.

  Files the application sends through ``wsgi.file_wrapper`` are handed over
  by name, as served from ``root``.
  """

  def __init__(self, app: WsgiApp, root: Optional[str | Path] = None):
    self.app = app
    self.root = root

  def __call__(self, req: HttpRequest) -> HttpResponse:
    environ = dict(req.get('environ', {}))
    environ['REQUEST_METHOD'] = req['method']
    environ['PATH_INFO'] = req['path']

    started: dict[str, Any] = {}
    written: list[bytes] = []

    def start_response(
        status: str,
        headers: list[tuple[str, str]],
        exc_info: Any = None,
    ) -> Callable[[bytes], Any]:
      started['status'] = status
      started['headers'] = headers
      return written.append

    result = self.app(environ, start_response)
    chunks = iter(result)

    # Applications may defer start_response until the first chunk is produced.
    if 'status' not in started:
      for chunk in chunks:
        written.append(chunk)
        break

    if 'status' not in started:
      close_body(result)
      raise Exception(f'start_response was not called for {req["path"]}')

    status: str = started['status']
    header_list: list[tuple[str, str]] = started['headers']
    res: HttpResponse = {
        'status': int(status.split(' ', 1)[0]),
        'headers': dict(header_list),
        'body': WsgiBody(written, chunks, result, status, header_list),
    }

    name = None if written else wrapped_file_name(result)
    if name is not None:
      close_body(result)
      res['body'] = WsgiFileBody(Path(name).resolve(), self.root, status, header_list)

    return res


class ThumbMiddleware:
  """WSGI middleware rendering thumbnails of the images served by ``app``.

  Requests that are not thumbnail requests reach ``app`` untouched. ``root``
  is the directory ``app`` serves files from; with ``write`` enabled,
  thumbnails of files sent through ``wsgi.file_wrapper`` are saved below it.
  """

  def __init__(
      self,
      app: WsgiApp,
      config: Optional[RouteConfig] = None,
      log: Logger = logger,
      processor: Optional[ImageProcessor] = None,
      root: Optional[str | Path] = None,
  ):
    self.app = app
    self.server = ThumbServer(
        log=log,
        config=RouteConfig() if config is None else config,
        origin=WsgiOrigin(app, root),
        processor=VipsProcessor(log) if processor is None else processor)

  def __call__(self, environ: Environ, start_response: StartResponse) -> Iterable[bytes]:
    result = self.server.process(request_from_environ(environ))

    if isinstance(result, Passthrough):
      return self.app(environ, start_response)

    body = result['body']
    if isinstance(body, (WsgiBody, WsgiFileBody)):
      # Relayed from the application as is.
      start_response(body.status, body.header_list)
    else:
      start_response(status_line(result['status']), list(result['headers'].items()))
    return body
