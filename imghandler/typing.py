from typing import Any, NotRequired, TypedDict

Headers = dict[str, str]


class QueryStringParameters(TypedDict):
  signature: NotRequired[str]


class RequestContext(TypedDict):
  elb: NotRequired[Any]
  stage: NotRequired[str]


class ImageHandlerEvent(TypedDict):
  path: NotRequired[str]
  queryStringParameters: NotRequired[QueryStringParameters | None]
  requestContext: NotRequired[RequestContext]
  headers: NotRequired[Headers | None]


class ExecutionResultDict(TypedDict):
  statusCode: int
  isBase64Encoded: bool
  headers: Headers
  body: str


class ErrorBody(TypedDict):
  message: str
  code: str
  status: int
