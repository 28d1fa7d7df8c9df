from aws_lambda_powertools.utilities.typing import LambdaContext

from imghandler import server
from imghandler.typing import ExecutionResultDict, ImageHandlerEvent


def image_handler_lambda_handler(
    event: ImageHandlerEvent,
    _: LambdaContext,
) -> ExecutionResultDict:
  # # For debugging
  # print('event:')
  # print(json.dumps(event))

  ret = server.lambda_main(event)

  # # For debugging
  # print('return:')
  # print(json.dumps(ret['headers']))

  return ret
