import os
from logging import Logger
from typing import Mapping, Optional

import boto3
from mypy_boto3_rekognition.client import RekognitionClient
from mypy_boto3_s3.client import S3Client
from mypy_boto3_secretsmanager.client import SecretsManagerClient

from imghandler.clients import ImageAnalysisService, ObjectStore, SecretProvider
from imghandler.config import Settings
from imghandler.errors import ImageHandlerError
from imghandler.imagehandler.index import ImageHandler
from imghandler.imagehandler.negotiation import AcceptHeader, negotiate
from imghandler.imagehandler.ops import ImageProcessor
from imghandler.imageresponse.index import ExecutionResult, ImageResponse
from imghandler.imagerequest.index import ImageRequest
from imghandler.imagerequest.signature import SignatureVerifier
from imghandler.log import ContextLogger, init_logging
from imghandler.typing import ExecutionResultDict, ImageHandlerEvent

logger = init_logging()


def get_header(event: ImageHandlerEvent, name: str, default: str = '') -> str:
  headers = event.get('headers') or {}
  lowered = name.lower()
  for k, v in headers.items():
    if k.lower() == lowered and v is not None:
      return v
  return default


def is_alb_event(event: ImageHandlerEvent) -> bool:
  return 'elb' in (event.get('requestContext') or {})


class ImgHandlerServer:
  instances: dict[Settings, 'ImgHandlerServer'] = {}

  def __init__(
      self,
      log: Logger,
      settings: Settings,
      s3: S3Client,
      rekognition: RekognitionClient,
      secretsmanager: SecretsManagerClient,
      processor: ImageProcessor,
  ):
    self.log = ContextLogger(log)
    self.settings = settings
    self.store = ObjectStore(s3)
    self.secrets = SecretProvider(secretsmanager)

    verifier: Optional[SignatureVerifier] = None
    if settings.enable_signature:
      verifier = SignatureVerifier(self.secrets, settings.secrets_manager, settings.secret_key)

    self.image_request = ImageRequest(
        self.log, settings, self.store, verifier, settings.rewrite_rule())
    self.image_handler = ImageHandler(
        self.log, settings, self.store, ImageAnalysisService(rekognition), processor)
    self.image_response = ImageResponse(self.log, settings, self.store)

  @classmethod
  def from_environment(cls, log: Logger, env: Mapping[str, str]) -> 'ImgHandlerServer':
    settings = Settings.from_env(env)

    if settings not in cls.instances:
      # libvips is loaded only when a server is built for real traffic.
      from imghandler.vips import VipsProcessor

      cls.instances[settings] = cls(
          log=log,
          settings=settings,
          s3=boto3.client('s3'),
          rekognition=boto3.client('rekognition'),
          secretsmanager=boto3.client('secretsmanager'),
          processor=VipsProcessor())

    return cls.instances[settings]

  def failure(self, error: ImageHandlerError, is_alb: bool) -> ExecutionResult:
    info = {'status': error.status, 'code': error.code, 'reason': error.message}
    if error.is_client_error():
      self.log.warning('request failed', info)
    else:
      self.log.error('request failed', info)
    return self.image_response.failure(error, is_alb)

  def process(self, event: ImageHandlerEvent) -> ExecutionResult:
    is_alb = is_alb_event(event)
    accept_header = get_header(event, 'accept')
    self.log.reset(path=event.get('path') or '', accept_header=accept_header)
    self.log.debug('request received', {'alb': is_alb})

    request_info = self.image_request.resolve(event)
    if isinstance(request_info, ImageHandlerError):
      return self.failure(request_info, is_alb)

    output = negotiate(
        request_info,
        AcceptHeader.from_str(accept_header),
        self.settings.auto_webp,
        self.settings.default_reduction_effort)

    processed = self.image_handler.run(request_info, output)
    if isinstance(processed, ImageHandlerError):
      return self.failure(processed, is_alb)

    result = self.image_response.success(request_info, output, processed, is_alb)
    self.log.debug(
        'responded', {
            'status': result.status_code,
            'content_type': result.headers.get('Content-Type'),
            'img_size': len(processed),
        })
    return result


def lambda_main(event: ImageHandlerEvent) -> ExecutionResultDict:
  server = ImgHandlerServer.from_environment(logger, os.environ)
  return server.process(event).to_lambda()
