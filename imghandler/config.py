import dataclasses
import logging
import re
from typing import Mapping, Optional

log = logging.getLogger(__name__)

YES = 'Yes'

DEFAULT_SMART_CROP_NOT_FOUND_STATUS = 400
DEFAULT_REDUCTION_EFFORT = 4

rewrite_literal_re = re.compile(r'^/(.*)/([a-z]*)$', re.DOTALL)
js_group_ref_re = re.compile(r'\$(\d+|<[A-Za-z_][A-Za-z0-9_]*>)')

REGEX_FLAGS = {
    'i': re.IGNORECASE,
    'm': re.MULTILINE,
    's': re.DOTALL,
}


class ConfigError(Exception):
  pass


def is_yes(value: Optional[str]) -> bool:
  return value == YES


def split_buckets(value: str) -> tuple[str, ...]:
  return tuple(b.strip() for b in value.split(',') if b.strip() != '')


@dataclasses.dataclass(frozen=True)
class RewriteRule:
  pattern: re.Pattern[str]
  substitution: str
  count: int

  @classmethod
  def compile(cls, match_pattern: str, substitution: str) -> 'RewriteRule':
    """Compile a rewrite rule.

    The pattern may be a bare regular expression or a ``/pattern/flags``
    literal. ``g`` in the flags replaces every occurrence, otherwise only
    the first one. ``$1`` and ``$<name>`` references in the substitution are
    translated to Python group references.
    """
    flags = 0
    count = 1
    m = rewrite_literal_re.match(match_pattern)
    if m is not None:
      source = m[1]
      for f in m[2]:
        if f == 'g':
          count = 0
        elif f in REGEX_FLAGS:
          flags |= REGEX_FLAGS[f]
        else:
          raise ConfigError(f'unsupported regular expression flag: {f}')
    else:
      source = match_pattern

    try:
      pattern = re.compile(source, flags)
    except re.error as e:
      raise ConfigError(f'invalid REWRITE_MATCH_PATTERN: {e}') from e

    def to_python_ref(ref: re.Match[str]) -> str:
      name = ref[1]
      if name.startswith('<'):
        return f'\\g{name}'
      return f'\\g<{name}>'

    return cls(pattern, js_group_ref_re.sub(to_python_ref, substitution), count)

  def matches(self, path: str) -> bool:
    return self.pattern.search(path) is not None

  def apply(self, path: str) -> str:
    return self.pattern.sub(self.substitution, path, count=self.count)


@dataclasses.dataclass(eq=True, frozen=True)
class Settings:
  source_buckets: tuple[str, ...]
  auto_webp: bool = False
  cors_enabled: bool = False
  cors_origin: str = ''
  enable_signature: bool = False
  secrets_manager: str = ''
  secret_key: str = ''
  enable_default_fallback_image: bool = False
  default_fallback_image_bucket: str = ''
  default_fallback_image_key: str = ''
  rewrite_match_pattern: str = ''
  rewrite_substitution: str = ''
  smart_crop_full_image_fallback: bool = False
  smart_crop_not_found_status: int = DEFAULT_SMART_CROP_NOT_FOUND_STATUS
  default_reduction_effort: int = DEFAULT_REDUCTION_EFFORT

  @classmethod
  def from_env(cls, env: Mapping[str, str]) -> 'Settings':
    status = parse_int_or(
        env.get('SMART_CROP_NOT_FOUND_STATUS', ''), DEFAULT_SMART_CROP_NOT_FOUND_STATUS)
    if not 400 <= status < 500:
      log.warning({
          'message': 'SMART_CROP_NOT_FOUND_STATUS must be a 4xx status',
          'value': status,
      })
      status = DEFAULT_SMART_CROP_NOT_FOUND_STATUS

    return cls(
        source_buckets=split_buckets(env.get('SOURCE_BUCKETS', '')),
        auto_webp=is_yes(env.get('AUTO_WEBP')),
        cors_enabled=is_yes(env.get('CORS_ENABLED')),
        cors_origin=env.get('CORS_ORIGIN', ''),
        enable_signature=is_yes(env.get('ENABLE_SIGNATURE')),
        secrets_manager=env.get('SECRETS_MANAGER', ''),
        secret_key=env.get('SECRET_KEY', ''),
        enable_default_fallback_image=is_yes(env.get('ENABLE_DEFAULT_FALLBACK_IMAGE')),
        default_fallback_image_bucket=env.get('DEFAULT_FALLBACK_IMAGE_BUCKET', ''),
        default_fallback_image_key=env.get('DEFAULT_FALLBACK_IMAGE_KEY', ''),
        rewrite_match_pattern=env.get('REWRITE_MATCH_PATTERN', ''),
        rewrite_substitution=env.get('REWRITE_SUBSTITUTION', ''),
        smart_crop_full_image_fallback=is_yes(env.get('SMART_CROP_FULL_IMAGE_FALLBACK')),
        smart_crop_not_found_status=status,
        default_reduction_effort=parse_int_or(
            env.get('DEFAULT_REDUCTION_EFFORT', ''), DEFAULT_REDUCTION_EFFORT))

  @property
  def default_bucket(self) -> Optional[str]:
    return self.source_buckets[0] if len(self.source_buckets) != 0 else None

  @property
  def fallback_image_enabled(self) -> bool:
    return (
        self.enable_default_fallback_image and self.default_fallback_image_bucket.strip() != ''
        and self.default_fallback_image_key.strip() != '')

  def rewrite_rule(self) -> Optional[RewriteRule]:
    if self.rewrite_match_pattern == '':
      return None
    try:
      return RewriteRule.compile(self.rewrite_match_pattern, self.rewrite_substitution)
    except ConfigError as e:
      log.error({'message': 'custom rewrite disabled', 'reason': str(e)})
      return None


def parse_int_or(value: str, default: int) -> int:
  try:
    return int(value)
  except ValueError:
    return default
