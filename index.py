from aws_lambda_powertools.utilities.typing import LambdaContext

from imgthumb.edge import index as edge
from imgthumb.typing import OriginRequestEvent, Request, ResponseResult


def origin_request_lambda_handler(
    event: OriginRequestEvent,
    _: LambdaContext,
) -> Request | ResponseResult:
  # # For debugging
  # print('event:')
  # print(json.dumps(event))

  ret = edge.lambda_main(event)

  # # For debugging
  # print('return:')
  # print(json.dumps(ret))

  return ret
