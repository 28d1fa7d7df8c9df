import hashlib
import hmac
from typing import Optional

from imghandler.clients import SecretProvider, SecretStoreError
from imghandler.errors import ErrorKind, ImageHandlerError


def sign(path: str, secret: str | bytes) -> str:
  key = secret.encode('utf-8') if isinstance(secret, str) else secret
  return hmac.new(key, path.encode('utf-8'), hashlib.sha256).hexdigest()


class SignatureVerifier:
  """HMAC-SHA256 check of the request path against a hex signature.

  The shared secret is read from the secret store on first use and kept for
  the lifetime of the verifier.
  """

  def __init__(self, secrets: SecretProvider, secret_name: str, secret_key: str):
    self.secrets = secrets
    self.secret_name = secret_name
    self.secret_key = secret_key
    self._secret: Optional[bytes] = None

  def secret(self) -> bytes:
    if self._secret is not None:
      return self._secret

    if self.secret_name == '' or self.secret_key == '':
      raise ImageHandlerError.of(
          ErrorKind.INTERNAL_ERROR,
          'Signature verification is enabled but SECRETS_MANAGER or SECRET_KEY is not set.')

    try:
      secret = self.secrets.get_secret(self.secret_name)
    except SecretStoreError as e:
      raise ImageHandlerError.of(
          ErrorKind.INTERNAL_ERROR, 'Signature validation failed. Could not get the secret.') from e

    value = secret.get(self.secret_key)
    if not isinstance(value, str) or value == '':
      raise ImageHandlerError.of(
          ErrorKind.INTERNAL_ERROR, 'Signature validation failed. The secret key was not found.')

    self._secret = value.encode('utf-8')
    return self._secret

  def verify(self, path: str, signature: Optional[str]) -> None:
    if signature is None or signature == '':
      raise ImageHandlerError.of(
          ErrorKind.SIGNATURE_MISMATCH, 'Query-string requires the signature parameter.')

    expected = hmac.new(self.secret(), path.encode('utf-8'), hashlib.sha256).digest()

    try:
      provided = bytes.fromhex(signature)
    except ValueError:
      provided = b''

    if not hmac.compare_digest(expected, provided):
      raise ImageHandlerError.of(
          ErrorKind.SIGNATURE_MISMATCH, 'Signature does not match.')
