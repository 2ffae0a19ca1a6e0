import base64
import dataclasses
import logging
import sys
from http import HTTPStatus
from logging import Logger
from typing import Optional

import boto3
from mypy_boto3_s3.client import S3Client

from imgthumb.origin.index import S3Origin
from imgthumb.thumbnail.index import (
    ImageProcessor,
    InvalidConfig,
    MyJsonFormatter,
    Passthrough,
    RouteConfig,
    ThumbServer,
    close_body
)
from imgthumb.typing import (
    Header,
    Headers,
    HttpRequest,
    HttpResponse,
    OriginRequestEvent,
    Request,
    ResponseResult
)
from imgthumb.vipsimage.index import VipsProcessor

# CloudFront rejects generated responses carrying these.
DISALLOWED_HEADERS = frozenset([
    'connection',
    'content-length',
    'keep-alive',
    'transfer-encoding',
    'via',
])


def init_logging() -> Logger:
  # https://stackoverflow.com/a/11548754/1160341
  logger = logging.getLogger()
  logger.setLevel(logging.DEBUG)
  for h in logger.handlers:
    logger.removeHandler(h)

  logging.getLogger('botocore').setLevel(logging.WARNING)
  logging.getLogger('urllib3').setLevel(logging.INFO)

  log = logging.getLogger(__name__)
  log_handler = logging.StreamHandler()
  log_handler.setFormatter(MyJsonFormatter())
  log_handler.setLevel(logging.DEBUG)
  log_handler.setStream(sys.stderr)
  log.addHandler(log_handler)
  log.propagate = False

  return log


logger = init_logging()


def get_header(req: Request, name: str) -> str:
  return req['origin']['s3']['customHeaders'][name][0]['value']


def get_header_or(req: Request, name: str, default: str = '') -> str:
  return (get_header(req, name) if name in req['origin']['s3']['customHeaders'] else default)


def parse_bool(name: str, value: str) -> Optional[bool]:
  match value.strip().lower():
    case '':
      return None
    case 'true':
      return True
    case 'false':
      return False
    case _:
      raise InvalidConfig(f'invalid "{name}": {value}')


def parse_int(name: str, value: str) -> Optional[int]:
  if value.strip() == '':
    return None

  try:
    return int(value)
  except ValueError:
    raise InvalidConfig(f'invalid "{name}": {value}')


def config_from_request(req: Request) -> RouteConfig:
  urls = get_header_or(req, 'x-env-thumb-urls', '/')

  return RouteConfig(
      urls=tuple(u.strip() for u in urls.split(',') if u.strip() != ''),
      prefix=get_header_or(req, 'x-env-thumb-prefix') or None,
      secret=get_header_or(req, 'x-env-thumb-secret') or None,
      keylength=parse_int('x-env-thumb-keylength', get_header_or(req, 'x-env-thumb-keylength')),
      crop=parse_bool('x-env-thumb-crop', get_header_or(req, 'x-env-thumb-crop')),
      preserve_metadata=parse_bool(
          'x-env-thumb-preserve-metadata',
          get_header_or(req, 'x-env-thumb-preserve-metadata')) is True,
      ttl=parse_int('x-env-thumb-ttl', get_header_or(req, 'x-env-thumb-ttl')))


def flatten_headers(headers: dict[str, list[Header]]) -> Headers:
  return {v[0].get('key', k): v[0]['value'] for k, v in headers.items() if len(v) != 0}


def to_http_request(req: Request) -> HttpRequest:
  return {
      'method': req['method'],
      'path': req['uri'],
      'headers': flatten_headers(req['headers']),
  }


def to_response_result(res: HttpResponse) -> ResponseResult:
  body = res['body']
  try:
    data = b''.join(body)
  finally:
    close_body(body)

  status = int(res['status'])
  response_result: ResponseResult = {
      'status': str(status),
      'headers': {
          k.lower(): [{
              'key': k,
              'value': v,
          }] for k, v in res['headers'].items() if k.lower() not in DISALLOWED_HEADERS
      },
  }

  try:
    response_result['statusDescription'] = HTTPStatus(status).phrase
  except ValueError:
    pass

  if len(data) != 0:
    response_result['body'] = base64.b64encode(data).decode()
    response_result['bodyEncoding'] = 'base64'

  return response_result


@dataclasses.dataclass(eq=True, frozen=True)
class XParams:
  region: str
  bucket: str
  config: RouteConfig


class EdgeServer:
  instances: dict[XParams, 'EdgeServer'] = {}

  def __init__(
      self,
      log: Logger,
      s3: S3Client,
      bucket: str,
      config: RouteConfig,
      processor: Optional[ImageProcessor] = None,
  ):
    self.log = log
    self.s3 = s3
    self.bucket = bucket
    self.thumb = ThumbServer(
        log=log,
        config=config,
        origin=S3Origin(log, s3, bucket),
        processor=VipsProcessor(log) if processor is None else processor)

  @classmethod
  def from_lambda(
      cls,
      log: Logger,
      req: Request,
  ) -> Optional['EdgeServer']:
    try:
      region = get_header(req, 'x-env-region')
      bucket = req['origin']['s3']['domainName'].split('.', 1)[0]
      config = config_from_request(req)
    except KeyError as e:
      log.warning({
          'message': 'environment variable not found',
          'key': str(e),
      })
      return None
    except InvalidConfig as e:
      log.warning({
          'message': 'invalid configuration',
          'reason': str(e),
      })
      return None

    server_key = XParams(region=region, bucket=bucket, config=config)

    if server_key not in cls.instances:
      s3 = boto3.client('s3', region_name=region)
      cls.instances[server_key] = cls(log=log, s3=s3, bucket=bucket, config=config)

    return cls.instances[server_key]

  def process(self, req: Request) -> Request | ResponseResult:
    result = self.thumb.process(to_http_request(req))

    if isinstance(result, Passthrough):
      self.log.debug({
          'message': 'passthrough',
          'uri': req['uri'],
          'reason': result.reason,
      })
      return req

    response_result = to_response_result(result)

    self.log.debug({
        'message': 'responded',
        'uri': req['uri'],
        'status': response_result['status'],
        'b64_size': len(response_result.get('body', '')),
    })

    return response_result


def lambda_main(event: OriginRequestEvent) -> Request | ResponseResult:
  req = event['Records'][0]['cf']['request']

  server = EdgeServer.from_lambda(logger, req)
  if server is None:
    return req

  return server.process(req)
