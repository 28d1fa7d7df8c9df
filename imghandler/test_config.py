import pytest

from .config import ConfigError, RewriteRule, Settings


def test_from_env_defaults() -> None:
  settings = Settings.from_env({})

  assert settings == Settings(source_buckets=())
  assert settings.default_bucket is None
  assert not settings.fallback_image_enabled
  assert settings.rewrite_rule() is None


def test_from_env() -> None:
  settings = Settings.from_env({
      'SOURCE_BUCKETS': 'images, assets ,,',
      'AUTO_WEBP': 'Yes',
      'CORS_ENABLED': 'Yes',
      'CORS_ORIGIN': 'https://example.com',
      'ENABLE_SIGNATURE': 'No',
      'ENABLE_DEFAULT_FALLBACK_IMAGE': 'Yes',
      'DEFAULT_FALLBACK_IMAGE_BUCKET': 'images',
      'DEFAULT_FALLBACK_IMAGE_KEY': 'fallback.png',
      'SMART_CROP_NOT_FOUND_STATUS': '422',
      'DEFAULT_REDUCTION_EFFORT': '2',
  })

  assert settings.source_buckets == ('images', 'assets')
  assert settings.default_bucket == 'images'
  assert settings.auto_webp
  assert settings.cors_enabled
  assert settings.cors_origin == 'https://example.com'
  assert not settings.enable_signature
  assert settings.fallback_image_enabled
  assert settings.smart_crop_not_found_status == 422
  assert settings.default_reduction_effort == 2


@pytest.mark.parametrize(
    'value,expected', [
        ('yes', False),
        ('YES', False),
        ('Yes', True),
        ('No', False),
    ],
    ids=['lower', 'upper', 'exact', 'no'])
def test_yes_is_exact(value: str, expected: bool) -> None:
  assert Settings.from_env({'AUTO_WEBP': value}).auto_webp == expected


@pytest.mark.parametrize(
    'value', ['500', 'abc', '200'], ids=['server-error', 'not-a-number', 'success'])
def test_invalid_face_not_found_status(value: str) -> None:
  settings = Settings.from_env({'SMART_CROP_NOT_FOUND_STATUS': value})

  assert settings.smart_crop_not_found_status == 400


def test_fallback_requires_bucket_and_key() -> None:
  settings = Settings.from_env({
      'ENABLE_DEFAULT_FALLBACK_IMAGE': 'Yes',
      'DEFAULT_FALLBACK_IMAGE_BUCKET': 'images',
      'DEFAULT_FALLBACK_IMAGE_KEY': ' ',
  })

  assert not settings.fallback_image_enabled


def test_settings_are_hashable() -> None:
  env = {'SOURCE_BUCKETS': 'images'}

  assert hash(Settings.from_env(env)) == hash(Settings.from_env(env))


@pytest.mark.parametrize(
    'pattern,substitution,path,expected', [
        (r'^/legacy/(.*)$', r'/\1', '/legacy/cat.jpg', '/cat.jpg'),
        ('/^\\/legacy\\/(.*)$/', '/$1', '/legacy/cat.jpg', '/cat.jpg'),
        ('/LEGACY/i', 'images', '/legacy/cat.jpg', '/images/cat.jpg'),
        ('/a/', 'b', '/a/a.jpg', '/b/a.jpg'),
        ('/a/g', 'b', '/a/a.jpg', '/b/b.jpg'),
        ('/([a-z]+)\\/(.*)/', '$2', '/thumb/cat.jpg', '/cat.jpg'),
    ],
    ids=['bare', 'literal', 'ignore-case', 'first-only', 'global', 'numbered-ref'])
def test_rewrite_rule(pattern: str, substitution: str, path: str, expected: str) -> None:
  rule = RewriteRule.compile(pattern, substitution)

  assert rule.matches(path)
  assert rule.apply(path) == expected


def test_rewrite_rule_invalid() -> None:
  with pytest.raises(ConfigError):
    RewriteRule.compile('/(unclosed/', '')

  with pytest.raises(ConfigError):
    RewriteRule.compile('/a/y', '')


def test_invalid_rewrite_rule_is_disabled() -> None:
  settings = Settings.from_env({'REWRITE_MATCH_PATTERN': '(unclosed'})

  assert settings.rewrite_rule() is None
