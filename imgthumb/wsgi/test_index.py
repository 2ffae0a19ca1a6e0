import logging
import mimetypes
from logging import Logger
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator
from wsgiref.util import FileWrapper

import pytest
from pyvips import Image  # type: ignore

from imgthumb.thumbnail.index import MyJsonFormatter, RouteConfig, close_body
from imgthumb.typing import HttpPath

from .index import (
    Environ,
    StartResponse,
    ThumbMiddleware,
    WsgiFileBody,
    WsgiOrigin,
    headers_from_environ,
    request_from_environ,
    status_line
)

PNG_NAME = 'image.png'
PNG_MIME = 'image/png'


class StaticApp:
  """Serves the files below ``root`` and records every environ it is called with."""

  def __init__(self, root: Path):
    self.root = root
    self.calls: list[Environ] = []

  def __call__(self, environ: Environ, start_response: StartResponse) -> Iterable[bytes]:
    self.calls.append(environ)

    path = self.root / environ['PATH_INFO'].lstrip('/')
    if not path.is_file():
      start_response('404 Not Found', [('Content-Type', 'text/plain')])
      return [b'not found\n']

    data = path.read_bytes()
    start_response(
        '200 OK', [
            ('Content-Type', mimetypes.guess_file_type(path)[0] or 'application/octet-stream'),
            ('Content-Length', str(len(data))),
        ])
    return [] if environ['REQUEST_METHOD'] == 'HEAD' else [data]


class FileApp:
  """Sends the files below ``root`` through ``wsgi.file_wrapper``."""

  def __init__(self, root: Path):
    self.root = root

  def __call__(self, environ: Environ, start_response: StartResponse) -> Iterable[bytes]:
    path = self.root / environ['PATH_INFO'].lstrip('/')
    if not path.is_file():
      start_response('404 Not Found', [('Content-Type', 'text/plain')])
      return [b'not found\n']

    start_response('200 OK', [('Content-Type', mimetypes.guess_file_type(path)[0] or '')])
    return environ['wsgi.file_wrapper'](open(path, 'rb'))


class StartResponseRecorder:

  def __init__(self) -> None:
    self.status: str | None = None
    self.headers: list[tuple[str, str]] = []

  def __call__(
      self,
      status: str,
      headers: list[tuple[str, str]],
      exc_info: Any = None,
  ) -> Callable[[bytes], Any]:
    self.status = status
    self.headers = headers
    return lambda _: None

  @property
  def header_dict(self) -> dict[str, str]:
    return dict(self.headers)


@pytest.fixture
def logger() -> Logger:
  log = logging.getLogger(__name__)
  log_handler = logging.StreamHandler()
  log_handler.setFormatter(MyJsonFormatter())
  log_handler.setLevel(logging.DEBUG)
  log.addHandler(log_handler)
  log.setLevel(logging.DEBUG)
  return log


@pytest.fixture
def app(tmp_path: Path) -> StaticApp:
  (tmp_path / 'media').mkdir()
  Image.black(200, 100, bands=3).write_to_file(str(tmp_path / 'media' / PNG_NAME))
  (tmp_path / 'media' / 'note.txt').write_bytes(b'hello\n')
  return StaticApp(tmp_path)


@pytest.fixture
def middleware(logger: Logger, app: StaticApp) -> ThumbMiddleware:
  return ThumbMiddleware(app, RouteConfig(urls=('/media',), ttl=60), logger)


def environ_for(path: str, method: str = 'GET') -> Environ:
  return {
      'REQUEST_METHOD': method,
      'PATH_INFO': path,
      'QUERY_STRING': '',
      'SERVER_NAME': 'localhost',
      'SERVER_PORT': '80',
      'CONTENT_TYPE': '',
      'HTTP_ACCEPT': 'image/*',
      'HTTP_X_FORWARDED_FOR': '127.0.0.1',
      'wsgi.file_wrapper': FileWrapper,
  }


def consume(body: Iterable[bytes]) -> bytes:
  try:
    return b''.join(body)
  finally:
    close_body(body)


def test_headers_from_environ() -> None:
  environ = environ_for('/')
  environ['CONTENT_LENGTH'] = '10'

  assert {
      'Accept': 'image/*',
      'X-Forwarded-For': '127.0.0.1',
      'Content-Length': '10',
  } == headers_from_environ(environ)


def test_request_from_environ() -> None:
  environ = environ_for('/media/image_50x.png', 'HEAD')
  req = request_from_environ(environ)

  assert 'HEAD' == req['method']
  assert HttpPath('/media/image_50x.png') == req['path']
  assert environ is req.get('environ')


@pytest.mark.parametrize(
    'status,expected', [(200, '200 OK'), (404, '404 Not Found'), (599, '599')],
    ids=['ok', 'not_found', 'unknown'])
def test_status_line(status: int, expected: str) -> None:
  assert expected == status_line(status)


@pytest.mark.parametrize(
    'path,status', [
        (f'/media/{PNG_NAME}', '200 OK'),
        ('/media/note.txt', '200 OK'),
        ('/other/image_50x50.png', '404 Not Found'),
    ],
    ids=['original', 'text', 'other_url'])
def test_passthrough(
    middleware: ThumbMiddleware,
    app: StaticApp,
    path: str,
    status: str,
) -> None:
  environ = environ_for(path)
  start_response = StartResponseRecorder()

  body = middleware(environ, start_response)

  assert 1 == len(app.calls)
  assert environ is app.calls[0]
  assert status == start_response.status
  consume(body)


def test_passthrough_method(middleware: ThumbMiddleware, app: StaticApp) -> None:
  environ = environ_for('/media/image_50x50.png', 'POST')
  middleware(environ, StartResponseRecorder())

  assert [environ] == app.calls


def test_thumbnail(middleware: ThumbMiddleware, app: StaticApp) -> None:
  environ = environ_for('/media/image_50x50.png')
  start_response = StartResponseRecorder()

  data = consume(middleware(environ, start_response))

  assert '200 OK' == start_response.status
  headers = start_response.header_dict
  assert PNG_MIME == headers['Content-Type']
  assert str(len(data)) == headers['Content-Length']
  assert 'public, max-age=60' == headers['Cache-Control']

  image = Image.new_from_buffer(data, '')
  assert (50, 50) == (image.get('width'), image.get('height'))

  assert 1 == len(app.calls)
  assert '/media/image.png' == app.calls[0]['PATH_INFO']
  assert 'GET' == app.calls[0]['REQUEST_METHOD']
  assert '/media/image_50x50.png' == environ['PATH_INFO']


def test_thumbnail_fit(middleware: ThumbMiddleware) -> None:
  start_response = StartResponseRecorder()
  data = consume(middleware(environ_for('/media/image_50xx50.png'), start_response))

  image = Image.new_from_buffer(data, '')
  assert (50, 25) == (image.get('width'), image.get('height'))


def test_thumbnail_head(middleware: ThumbMiddleware, app: StaticApp) -> None:
  start_response = StartResponseRecorder()
  data = consume(middleware(environ_for('/media/image_50x50.png', 'HEAD'), start_response))

  assert '200 OK' == start_response.status
  assert 'Content-Length' not in start_response.header_dict
  assert b'' == data
  assert 'HEAD' == app.calls[0]['REQUEST_METHOD']


def test_thumbnail_not_found(middleware: ThumbMiddleware) -> None:
  start_response = StartResponseRecorder()
  data = consume(middleware(environ_for('/media/missing_50x50.png'), start_response))

  assert '404 Not Found' == start_response.status
  assert b'not found\n' == data


def test_thumbnail_bad_request(middleware: ThumbMiddleware, app: StaticApp) -> None:
  start_response = StartResponseRecorder()
  data = consume(middleware(environ_for('/media/image_0x50.png'), start_response))

  assert '400 Bad Request' == start_response.status
  assert b'Bad thumbnail parameters in /media/image_0x50.png\n' == data
  assert [] == app.calls


def test_origin_deferred_start_response() -> None:

  def app(environ: Environ, start_response: StartResponse) -> Iterator[bytes]:
    start_response('200 OK', [('Content-Type', PNG_MIME)])
    yield b'first'
    yield b'second'

  origin = WsgiOrigin(app)
  res = origin({'method': 'GET', 'path': HttpPath('/image.png'), 'headers': {}})

  assert 200 == res['status']
  assert {'Content-Type': PNG_MIME} == res['headers']
  assert b'firstsecond' == consume(res['body'])


def test_origin_without_start_response() -> None:

  def app(environ: Environ, start_response: StartResponse) -> Iterable[bytes]:
    return []

  origin = WsgiOrigin(app)
  with pytest.raises(Exception):
    origin({'method': 'GET', 'path': HttpPath('/image.png'), 'headers': {}})


def test_relay_keeps_status_and_headers(logger: Logger) -> None:

  def app(environ: Environ, start_response: StartResponse) -> Iterable[bytes]:
    start_response(
        '404 Nope', [
            ('Content-Type', 'text/plain'),
            ('Set-Cookie', 'a=1'),
            ('Set-Cookie', 'b=2'),
        ])
    return [b'nope\n']

  middleware = ThumbMiddleware(app, RouteConfig(urls=('/media',)), logger)
  start_response = StartResponseRecorder()

  data = consume(middleware(environ_for('/media/image_50x50.png'), start_response))

  assert '404 Nope' == start_response.status
  assert [
      ('Content-Type', 'text/plain'),
      ('Set-Cookie', 'a=1'),
      ('Set-Cookie', 'b=2'),
  ] == start_response.headers
  assert b'nope\n' == data


def test_origin_file_wrapper(tmp_path: Path) -> None:
  (tmp_path / 'media').mkdir()
  source = tmp_path / 'media' / PNG_NAME
  Image.black(20, 10, bands=3).write_to_file(str(source))
  opened = []

  def app(environ: Environ, start_response: StartResponse) -> Iterable[bytes]:
    start_response('200 OK', [('Content-Type', PNG_MIME)])
    f = open(source, 'rb')
    opened.append(f)
    return environ['wsgi.file_wrapper'](f)

  origin = WsgiOrigin(app, tmp_path)
  res = origin({
      'method': 'GET',
      'path': HttpPath(f'/media/{PNG_NAME}'),
      'headers': {},
      'environ': environ_for(f'/media/{PNG_NAME}'),
  })

  body = res['body']
  assert isinstance(body, WsgiFileBody)
  assert str(source.resolve()) == body.path
  assert str(tmp_path) == body.root
  assert '200 OK' == body.status
  assert opened[0].closed
  assert source.read_bytes() == b''.join(body)


def test_thumbnail_file_wrapper(logger: Logger, app: StaticApp, tmp_path: Path) -> None:
  middleware = ThumbMiddleware(
      FileApp(tmp_path), RouteConfig(urls=('/media',)), logger, root=tmp_path)
  start_response = StartResponseRecorder()

  data = consume(middleware(environ_for('/media/image_50x50.png'), start_response))

  assert '200 OK' == start_response.status
  image = Image.new_from_buffer(data, '')
  assert (50, 50) == (image.get('width'), image.get('height'))
  assert not (tmp_path / 'media' / 'image_50x50.png').exists()


def test_thumbnail_write_through(logger: Logger, app: StaticApp, tmp_path: Path) -> None:
  middleware = ThumbMiddleware(
      FileApp(tmp_path), RouteConfig(urls=('/media',), write=True), logger, root=tmp_path)
  start_response = StartResponseRecorder()

  data = consume(middleware(environ_for('/media/image_50x50.png'), start_response))

  assert '200 OK' == start_response.status
  written = tmp_path / 'media' / 'image_50x50.png'
  assert written.read_bytes() == data
  image = Image.new_from_file(str(written))
  assert (50, 50) == (image.get('width'), image.get('height'))
