import dataclasses
import datetime
import logging
import math
import re
import sys
from collections.abc import Sequence
from enum import Enum
from logging import Logger
from typing import Any, Optional, Self
from urllib import parse

from pathspec import PathSpec
from pythonjsonlogger.json import JsonFormatter

import imgfilter
from imgfilter.typing import Header, HttpPath, Request, RequestEvent

ENV_ALLOWED_DIMENSIONS = 'x-env-allowed-dimensions'
ENV_DEFAULT_DIMENSION = 'x-env-default-dimension'
ENV_VARIANCE = 'x-env-variance'
ENV_DEFAULT_TRANSFORM = 'x-env-default-transform'
ENV_DEFAULT_QUALITY = 'x-env-default-quality'
ENV_BYPASS_PATTERNS = 'x-env-bypass-patterns'

ALLOWED_DIMENSIONS = (16, 64, 240, 360, 640, 960, 1280, 1920)
DEFAULT_DIMENSION = 360
VARIANCE = 0.2
WEBP_FORMAT = 'webp'

WIDTH_PARAM = 'w'
HEIGHT_PARAM = 'h'
TRANSFORM_PARAM = 't'
QUALITY_PARAM = 'q'

decimal_re = re.compile(r'[+-]?(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?')
radix_re = re.compile(r'0(?:[xX][0-9a-fA-F]+|[oO][0-7]+|[bB][01]+)')

format_aliases = {
    'jpg': 'jpeg',
}


class MyJsonFormatter(JsonFormatter):

  def __init__(self) -> None:
    super().__init__(json_ensure_ascii=False)

  def add_fields(self, log_record: Any, record: Any, message_dict: Any) -> None:
    log_record['_ts'] = datetime.datetime.now(datetime.UTC).strftime('%Y-%m-%dT%H:%M:%S.%fZ')

    if log_record.get('level'):
      log_record['level'] = log_record['level'].upper()
    else:
      log_record['level'] = record.levelname

    log_record['version'] = imgfilter.version

    super().add_fields(log_record, record, message_dict)


def init_logging() -> Logger:
  # https://stackoverflow.com/a/11548754/1160341
  logger = logging.getLogger()
  logger.setLevel(logging.DEBUG)
  for h in list(logger.handlers):
    logger.removeHandler(h)

  log = logging.getLogger(__name__)
  log_handler = logging.StreamHandler()
  log_handler.setFormatter(MyJsonFormatter())
  log_handler.setLevel(logging.DEBUG)
  log_handler.setStream(sys.stderr)
  log.addHandler(log_handler)
  log.propagate = False

  return log


logger = init_logging()


class InvalidConfig(Exception):
  pass


class Transform(Enum):
  CROP = 'c'
  FIT = 'f'

  @classmethod
  def from_query(cls, value: Optional[str], default: 'Transform') -> 'Transform':
    if value == cls.FIT.value:
      return cls.FIT
    return default


class Quality(Enum):
  LOW = 'l'
  MEDIUM = 'm'
  HIGH = 'h'

  @classmethod
  def from_query(cls, value: Optional[str], default: 'Quality') -> 'Quality':
    for quality in cls:
      if quality.value == value:
        return quality
    return default


class ProcessingMode(Enum):
  WIDTH_ONLY = 'w'
  HEIGHT_ONLY = 'h'
  CROP = 'c'
  FIT = 'f'

  @classmethod
  def from_transform(cls, transform: Transform) -> 'ProcessingMode':
    match transform:
      case Transform.CROP:
        return cls.CROP
      case Transform.FIT:
        return cls.FIT
      case _:
        raise Exception('system error')

  @classmethod
  def select(cls, has_width: bool, has_height: bool, transform: Transform) -> 'ProcessingMode':
    # A single dimension always wins over the transform.
    match (has_width, has_height):
      case (True, False):
        return cls.WIDTH_ONLY
      case (False, True):
        return cls.HEIGHT_ONLY
      case _:
        return cls.from_transform(transform)

  @property
  def tag(self) -> str:
    return self.value


def get_header_or(headers: dict[str, list[Header]], name: str, default: str = '') -> str:
  if name not in headers or len(headers[name]) == 0:
    return default

  if headers[name][0]['value'] == '':
    return default

  return headers[name][0]['value']


def get_custom_headers(req: Request) -> dict[str, list[Header]]:
  if 'origin' not in req:
    return {}

  origin = req['origin']
  if 's3' in origin:
    return origin['s3']['customHeaders']
  if 'custom' in origin:
    return origin['custom']['customHeaders']
  return {}


def parse_int_list(s: str, name: str) -> tuple[int, ...]:
  try:
    return tuple(int(v.strip()) for v in s.split(','))
  except ValueError:
    raise InvalidConfig(f'invalid "{name}": {s}')


def parse_int(s: str, name: str) -> int:
  try:
    return int(s.strip())
  except ValueError:
    raise InvalidConfig(f'invalid "{name}": {s}')


def parse_float(s: str, name: str) -> float:
  try:
    return float(s.strip())
  except ValueError:
    raise InvalidConfig(f'invalid "{name}": {s}')


@dataclasses.dataclass(eq=True, frozen=True)
class FilterConfig:
  allowed_dimensions: tuple[int, ...]
  default_dimension: int
  variance: float
  default_transform: Transform
  default_quality: Quality
  negotiation_token: str
  bypass_patterns: tuple[str, ...]

  @classmethod
  def create(
      cls,
      allowed_dimensions: Sequence[int] = ALLOWED_DIMENSIONS,
      default_dimension: int = DEFAULT_DIMENSION,
      variance: float = VARIANCE,
      default_transform: Transform = Transform.CROP,
      default_quality: Quality = Quality.MEDIUM,
      negotiation_token: str = WEBP_FORMAT,
      bypass_patterns: Sequence[str] = (),
  ) -> 'FilterConfig':
    if len(allowed_dimensions) == 0 or any(d <= 0 for d in allowed_dimensions):
      raise InvalidConfig(f'invalid allowed dimensions: {allowed_dimensions}')

    if default_dimension <= 0:
      raise InvalidConfig(f'invalid default dimension: {default_dimension}')

    if not math.isfinite(variance) or not (0 <= variance < 1):
      raise InvalidConfig(f'invalid variance: {variance}')

    if negotiation_token == '':
      raise InvalidConfig('empty negotiation token')

    return cls(
        allowed_dimensions=tuple(allowed_dimensions),
        default_dimension=default_dimension,
        variance=variance,
        default_transform=default_transform,
        default_quality=default_quality,
        negotiation_token=negotiation_token,
        bypass_patterns=tuple(bypass_patterns))

  @classmethod
  def from_custom_headers(cls, headers: dict[str, list[Header]]) -> 'FilterConfig':
    allowed_dimensions = get_header_or(headers, ENV_ALLOWED_DIMENSIONS)
    default_dimension = get_header_or(headers, ENV_DEFAULT_DIMENSION)
    variance = get_header_or(headers, ENV_VARIANCE)
    default_transform = get_header_or(headers, ENV_DEFAULT_TRANSFORM, Transform.CROP.value)
    default_quality = get_header_or(headers, ENV_DEFAULT_QUALITY, Quality.MEDIUM.value)
    bypass_patterns = get_header_or(headers, ENV_BYPASS_PATTERNS)

    try:
      transform = Transform(default_transform)
      quality = Quality(default_quality)
    except ValueError as e:
      raise InvalidConfig(str(e))

    return cls.create(
        allowed_dimensions=(
            ALLOWED_DIMENSIONS if allowed_dimensions == '' else parse_int_list(
                allowed_dimensions, ENV_ALLOWED_DIMENSIONS)),
        default_dimension=(
            DEFAULT_DIMENSION if default_dimension == '' else parse_int(
                default_dimension, ENV_DEFAULT_DIMENSION)),
        variance=VARIANCE if variance == '' else parse_float(variance, ENV_VARIANCE),
        default_transform=transform,
        default_quality=quality,
        bypass_patterns=[p.strip() for p in bypass_patterns.split(',') if p.strip() != ''])


DEFAULT_CONFIG = FilterConfig.create()


def parse_dimension(value: str) -> Optional[float]:
  # ASCII digits only; float() alone also takes '1_000' and non-ASCII digits.
  s = value.strip()
  if decimal_re.fullmatch(s):
    return float(s)
  if radix_re.fullmatch(s):
    return float(int(s, 0))
  return None


def match_dimension(
    value: str | float,
    default_size: int,
    allowed_dimensions: Sequence[int],
    variance: float,
) -> int:
  if isinstance(value, str):
    parsed = parse_dimension(value)
    if parsed is None:
      return default_size
    target = parsed
  else:
    target = value

  # Windows may overlap; the first one in order wins.
  for dimension in allowed_dimensions:
    lower = dimension - dimension * variance
    upper = dimension + dimension * variance
    if lower <= target <= upper:
      return dimension

  return default_size


def query_value(qs: dict[str, list[str]], name: str) -> Optional[str]:
  if name not in qs or len(qs[name]) == 0:
    return None

  # A repeated key joins into one value, which never matches a known one.
  value = ','.join(qs[name])
  if value == '':
    return None
  return value


@dataclasses.dataclass(eq=True, frozen=True)
class RequestParameters:
  width: Optional[str]
  height: Optional[str]
  transform: Transform
  quality: Quality

  @classmethod
  def maybe_from_querystring(
      cls,
      qs: dict[str, list[str]],
      config: FilterConfig,
  ) -> Optional['RequestParameters']:
    width = query_value(qs, WIDTH_PARAM)
    height = query_value(qs, HEIGHT_PARAM)
    if width is None and height is None:
      return None

    transform = query_value(qs, TRANSFORM_PARAM)
    quality = query_value(qs, QUALITY_PARAM)

    return cls(
        width=width,
        height=height,
        transform=Transform.from_query(transform, config.default_transform),
        quality=Quality.from_query(quality, config.default_quality))

  @property
  def mode(self) -> ProcessingMode:
    return ProcessingMode.select(self.width is not None, self.height is not None, self.transform)


@dataclasses.dataclass(eq=True, frozen=True)
class Dimensions:
  width: Optional[int]
  height: Optional[int]

  @classmethod
  def resolve(cls, params: RequestParameters, config: FilterConfig) -> 'Dimensions':

    def snap(value: Optional[str]) -> int:
      if value is None:
        return config.default_dimension
      return match_dimension(
          value, config.default_dimension, config.allowed_dimensions, config.variance)

    match params.mode:
      case ProcessingMode.WIDTH_ONLY:
        return cls(snap(params.width), None)
      case ProcessingMode.HEIGHT_ONLY:
        return cls(None, snap(params.height))
      case ProcessingMode.CROP | ProcessingMode.FIT:
        return cls(snap(params.width), snap(params.height))
      case _:
        raise Exception('system error')

  def size_spec(self) -> str:
    match (self.width, self.height):
      case (int() as width, None):
        return str(width)
      case (None, int() as height):
        return str(height)
      case (int() as width, int() as height):
        return f'{width}x{height}'
      case _:
        raise Exception('system error')


class AcceptHeader:
  value: str

  def __init__(self, value: str):
    self.value = value

  @classmethod
  def from_str(cls, accept_header: str) -> Self:
    return cls(accept_header)

  def accepts(self, token: str) -> bool:
    return token in self.value


@dataclasses.dataclass(eq=True, frozen=True)
class ImagePath:
  prefix: str
  name: str
  extension: str

  @classmethod
  def maybe_from_path(cls, path: str) -> Optional['ImagePath']:
    prefix, slash, filename = path.rpartition('/')
    if slash == '':
      return None

    name, dot, extension = filename.rpartition('.')
    if dot == '' or extension == '':
      return None

    return cls(prefix, name, extension)

  @property
  def filename(self) -> str:
    return f'{self.name}.{self.extension}'

  def negotiate_format(self, accept: AcceptHeader, token: str) -> str:
    if accept.accepts(token):
      return token

    image_format = self.extension.lower()
    return format_aliases.get(image_format, image_format)


@dataclasses.dataclass(eq=True, frozen=True)
class CanonicalPath:
  prefix: str
  mode: ProcessingMode
  size_spec: str
  quality: Quality
  image_format: str
  filename: str

  def segments(self) -> list[str]:
    return [
        self.prefix,
        self.mode.tag,
        self.size_spec,
        self.quality.value,
        self.image_format,
        self.filename,
    ]

  def to_uri(self) -> HttpPath:
    return HttpPath('/'.join(self.segments()))


@dataclasses.dataclass(eq=True, frozen=True)
class PathParseError:
  path: str
  reason: str


def build_uri(
    path: str,
    params: RequestParameters,
    dimensions: Dimensions,
    accept: AcceptHeader,
    config: FilterConfig,
) -> CanonicalPath | PathParseError:
  image_path = ImagePath.maybe_from_path(path)
  if image_path is None:
    return PathParseError(path=path, reason='no directory or extension')

  return CanonicalPath(
      prefix=image_path.prefix,
      mode=params.mode,
      size_spec=dimensions.size_spec(),
      quality=params.quality,
      image_format=image_path.negotiate_format(accept, config.negotiation_token),
      filename=image_path.filename)


@dataclasses.dataclass(eq=True, frozen=True)
class FieldUpdate:
  reason: str
  uri: Optional[HttpPath] = None


class ImgFilter:
  instances: dict[FilterConfig, 'ImgFilter'] = {}

  def __init__(self, log: Logger, config: FilterConfig):
    self.log = log
    self.config = config
    self.bypass_path_spec = (
        None if len(config.bypass_patterns) == 0 else PathSpec.from_lines(
            'gitwildmatch', config.bypass_patterns))
    self.log_context = {'path': '', 'qstr': '', 'accept_header': ''}

  @classmethod
  def from_lambda(cls, log: Logger, req: Request) -> Optional['ImgFilter']:
    try:
      config = FilterConfig.from_custom_headers(get_custom_headers(req))
    except InvalidConfig as e:
      log.warning({
          'message': 'invalid configuration',
          'reason': str(e),
      })
      return None

    if config not in cls.instances:
      cls.instances[config] = cls(log=log, config=config)

    return cls.instances[config]

  def log_warning(self, message: str, dict: dict[str, Any]) -> None:
    self.log.warning({
        'message': message,
        **self.log_context,
        **dict,
    })

  def log_debug(self, message: str, dict: dict[str, Any]) -> None:
    self.log.debug({
        'message': message,
        **self.log_context,
        **dict,
    })

  def log_error(self, message: str, dict: dict[str, Any]) -> None:
    self.log.error({
        'message': message,
        **self.log_context,
        **dict,
    })

  def rewrite(
      self,
      path: HttpPath,
      qs: dict[str, list[str]],
      accept_header: AcceptHeader,
  ) -> FieldUpdate:
    params = RequestParameters.maybe_from_querystring(qs, self.config)
    if params is None:
      return FieldUpdate(reason='no size requested')

    dimensions = Dimensions.resolve(params, self.config)

    match build_uri(path, params, dimensions, accept_header, self.config):
      case CanonicalPath() as canonical:
        return FieldUpdate(reason='rewritten', uri=canonical.to_uri())
      case PathParseError() as error:
        self.log_warning('failed to parse path', {'reason': error.reason})
        return FieldUpdate(reason='unparsable path')
      case _:
        raise Exception('system error')

  def process(
      self,
      path: HttpPath,
      qs: dict[str, list[str]],
      accept_header: AcceptHeader,
  ) -> FieldUpdate:
    if self.bypass_path_spec is not None and self.bypass_path_spec.match_file(path):
      return FieldUpdate(reason='bypassed')

    try:
      return self.rewrite(path, qs, accept_header)
    except Exception as e:
      self.log_error('error during rewrite()', {'reason': str(e)})
      return FieldUpdate(reason='error occurred')

  def set_log_context(self, path: HttpPath, qstr: str, accept_header: str) -> None:
    self.log_context = {'path': str(path), 'qstr': qstr, 'accept_header': accept_header}


def lambda_main(event: RequestEvent) -> Request:
  req = event['Records'][0]['cf']['request']
  accept_header = get_header_or(req['headers'], 'accept')

  server = ImgFilter.from_lambda(logger, req)
  if server is None:
    return req

  path = req['uri']
  qstr = req['querystring']

  server.set_log_context(path, qstr, accept_header)
  qs = parse.parse_qs(qstr, keep_blank_values=True)
  result = server.process(path, qs, AcceptHeader.from_str(accept_header))

  if result.uri is not None:
    req['uri'] = result.uri

  server.log_debug('done', {
      'uri': req['uri'],
      'reason': result.reason,
  })

  return req
