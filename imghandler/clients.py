import dataclasses
import datetime
import json
from typing import Any, Optional

from botocore.exceptions import BotoCoreError, ClientError
from mypy_boto3_rekognition.client import RekognitionClient
from mypy_boto3_s3.client import S3Client
from mypy_boto3_secretsmanager.client import SecretsManagerClient

NOT_FOUND_CODES = ['404', 'NoSuchKey', 'NoSuchBucket']
NO_CONTENT_CODES = ['InvalidImageFormatException']


class ObjectNotFound(Exception):
  pass


class ObjectStoreError(Exception):
  pass


class NoAnalyzableContent(Exception):
  pass


class AnalysisError(Exception):
  pass


class SecretStoreError(Exception):
  pass


def client_error_code(exception: ClientError) -> Optional[str]:
  if 'Error' not in exception.response:
    return None
  if 'Code' not in exception.response['Error']:
    return None
  return exception.response['Error']['Code']


def is_not_found_client_error(exception: ClientError) -> bool:
  return client_error_code(exception) in NOT_FOUND_CODES


@dataclasses.dataclass(frozen=True)
class StoredObject:
  body: bytes
  content_type: Optional[str] = None
  last_modified: Optional[datetime.datetime] = None
  expires: Optional[str] = None
  cache_control: Optional[str] = None


class ObjectStore:
  """Object store backed by S3."""

  def __init__(self, s3: S3Client):
    self.s3 = s3

  def get(self, bucket: str, key: str) -> StoredObject:
    try:
      res = self.s3.get_object(Bucket=bucket, Key=key)
      body = res['Body'].read()
    except ClientError as e:
      if is_not_found_client_error(e):
        raise ObjectNotFound(f'{bucket}/{key}') from e
      raise ObjectStoreError(f'{client_error_code(e)}: {bucket}/{key}') from e
    except BotoCoreError as e:
      raise ObjectStoreError(str(e)) from e

    expires = res.get('ExpiresString')
    if expires is None and 'Expires' in res:
      expires = res['Expires'].isoformat()

    return StoredObject(
        body=body,
        content_type=res.get('ContentType'),
        last_modified=res.get('LastModified'),
        expires=expires,
        cache_control=res.get('CacheControl'))


@dataclasses.dataclass(frozen=True)
class FaceDetail:
  """A detected face. The box is expressed as ratios of the image size."""
  left: float
  top: float
  width: float
  height: float
  confidence: float


@dataclasses.dataclass(frozen=True)
class ModerationLabel:
  name: str
  confidence: float


class ImageAnalysisService:
  """Face and moderation analysis backed by Rekognition."""

  def __init__(self, rekognition: RekognitionClient):
    self.rekognition = rekognition

  def call(self, operation: str, **kwargs: Any) -> Any:
    try:
      return getattr(self.rekognition, operation)(**kwargs)
    except ClientError as e:
      code = client_error_code(e)
      if code in NO_CONTENT_CODES:
        raise NoAnalyzableContent(f'{operation}: {code}') from e
      raise AnalysisError(f'{operation}: {code}') from e
    except BotoCoreError as e:
      raise AnalysisError(f'{operation}: {e}') from e

  def detect_faces(self, image: bytes) -> list[FaceDetail]:
    res = self.call('detect_faces', Image={'Bytes': image})
    faces = []
    for detail in res.get('FaceDetails', []):
      box = detail.get('BoundingBox', {})
      faces.append(
          FaceDetail(
              left=box.get('Left', 0.0),
              top=box.get('Top', 0.0),
              width=box.get('Width', 0.0),
              height=box.get('Height', 0.0),
              confidence=detail.get('Confidence', 0.0)))
    return faces

  def detect_moderation_labels(
      self,
      image: bytes,
      min_confidence: Optional[float] = None,
  ) -> list[ModerationLabel]:
    kwargs: dict[str, Any] = {'Image': {'Bytes': image}}
    if min_confidence is not None:
      kwargs['MinConfidence'] = min_confidence
    res = self.call('detect_moderation_labels', **kwargs)
    return [
        ModerationLabel(
            name=label.get('Name', ''),
            confidence=label.get('Confidence', 0.0)) for label in res.get('ModerationLabels', [])
    ]


class SecretProvider:
  """Secrets Manager lookups, memoized for the lifetime of the instance."""

  def __init__(self, secretsmanager: SecretsManagerClient):
    self.secretsmanager = secretsmanager
    self.cache: dict[str, dict[str, str]] = {}

  def get_secret(self, name: str) -> dict[str, str]:
    if name in self.cache:
      return self.cache[name]

    try:
      res = self.secretsmanager.get_secret_value(SecretId=name)
    except ClientError as e:
      raise SecretStoreError(f'{client_error_code(e)}: {name}') from e
    except BotoCoreError as e:
      raise SecretStoreError(str(e)) from e

    if 'SecretString' not in res:
      raise SecretStoreError(f'secret is not a string: {name}')
    try:
      secret = json.loads(res['SecretString'])
    except ValueError as e:
      raise SecretStoreError(f'secret is not JSON: {name}') from e
    if not isinstance(secret, dict):
      raise SecretStoreError(f'secret is not a key/value map: {name}')

    self.cache[name] = secret
    return secret
