import datetime
import mimetypes
from http import HTTPStatus
from logging import Logger
from pathlib import Path
from typing import Iterator
from urllib import parse

from botocore.exceptions import ClientError
from botocore.response import StreamingBody
from mypy_boto3_s3.client import S3Client
from mypy_boto3_s3.type_defs import (
    GetObjectOutputTypeDef,
    HeadObjectOutputTypeDef
)

from imgthumb.thumbnail.index import CHUNK_SIZE, FileBody, resolve_under
from imgthumb.typing import Headers, HttpPath, HttpRequest, HttpResponse, S3Key

ORIGIN_METHODS = ('GET', 'HEAD')


def http_date(dt: datetime.datetime) -> str:
  return dt.astimezone(datetime.UTC).strftime('%a, %d %b %Y %H:%M:%S GMT')


def plain_response(status: HTTPStatus, head: bool) -> HttpResponse:
  body = f'{status.phrase}\n'.encode()
  return {
      'status': status,
      'headers': {
          'Content-Type': 'text/plain',
          'Content-Length': str(len(body)),
      },
      'body': [] if head else [body],
  }


def key_from_path(path: HttpPath) -> S3Key:
  return S3Key(parse.unquote(path[1:]))


def is_not_found_client_error(exception: ClientError) -> bool:
  if 'Error' not in exception.response:
    return False
  if 'Code' not in exception.response['Error']:
    return False
  return exception.response['Error']['Code'] in ['404', 'NoSuchKey']


class FileOrigin:
  """Serves the files below ``root``, like a static file server would."""

  def __init__(self, log: Logger, root: str | Path):
    self.log = log
    self.root = Path(root).resolve()

  def __call__(self, req: HttpRequest) -> HttpResponse:
    head = req['method'] == 'HEAD'

    if req['method'] not in ORIGIN_METHODS:
      return plain_response(HTTPStatus.METHOD_NOT_ALLOWED, head)

    path = resolve_under(self.root, req['path'])
    if path is None or not path.is_file():
      self.log.debug({'message': 'file not found', 'path': str(req['path'])})
      return plain_response(HTTPStatus.NOT_FOUND, head)

    stat = path.stat()
    mime = mimetypes.guess_file_type(path)[0] or 'application/octet-stream'
    headers: Headers = {
        'Content-Type': mime,
        'Content-Length': str(stat.st_size),
        'Last-Modified': http_date(datetime.datetime.fromtimestamp(stat.st_mtime, datetime.UTC)),
    }

    return {
        'status': HTTPStatus.OK,
        'headers': headers,
        'body': [] if head else FileBody(path, self.root),
    }


class S3Body:
  body: StreamingBody

  def __init__(self, body: StreamingBody):
    self.body = body

  def __iter__(self) -> Iterator[bytes]:
    return self.body.iter_chunks(CHUNK_SIZE)

  def close(self) -> None:
    self.body.close()


class S3Origin:

  def __init__(self, log: Logger, s3: S3Client, bucket: str):
    self.log = log
    self.s3 = s3
    self.bucket = bucket

  def __call__(self, req: HttpRequest) -> HttpResponse:
    head = req['method'] == 'HEAD'

    if req['method'] not in ORIGIN_METHODS:
      return plain_response(HTTPStatus.METHOD_NOT_ALLOWED, head)

    key = key_from_path(req['path'])
    try:
      obj: HeadObjectOutputTypeDef | GetObjectOutputTypeDef
      body = None
      if head:
        obj = self.s3.head_object(Bucket=self.bucket, Key=key)
      else:
        obj = self.s3.get_object(Bucket=self.bucket, Key=key)
        body = S3Body(obj['Body'])
    except ClientError as e:
      if is_not_found_client_error(e):
        self.log.debug({'message': 'object not found', 'bucket': self.bucket, 'key': key})
        return plain_response(HTTPStatus.NOT_FOUND, head)
      raise e

    headers: Headers = {
        'Content-Type': obj.get('ContentType', 'application/octet-stream'),
        'Content-Length': str(obj.get('ContentLength', 0)),
    }
    if 'ETag' in obj:
      headers['ETag'] = obj['ETag']
    if 'LastModified' in obj:
      headers['Last-Modified'] = http_date(obj['LastModified'])

    return {
        'status': HTTPStatus.OK,
        'headers': headers,
        'body': [] if body is None else body,
    }
