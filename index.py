from aws_lambda_powertools.utilities.typing import LambdaContext

from imgfilter.typing import Request, RequestEvent
from imgfilter.viewerrequest import index as viewerrequest


def viewer_request_lambda_handler(
    event: RequestEvent,
    _: LambdaContext,
) -> Request:
  # # For debugging
  # print('event:')
  # print(json.dumps(event))

  ret = viewerrequest.lambda_main(event)

  # # For debugging
  # print('return:')
  # print(json.dumps(ret))

  return ret


def origin_request_lambda_handler(
    event: RequestEvent,
    _: LambdaContext,
) -> Request:
  # Same rewrite; the origin's custom headers may carry configuration.
  return viewerrequest.lambda_main(event)
