#!/usr/bin/env python3
import re
import math
import enum
from dataclasses import dataclass
from configparser import ConfigParser, Error as ConfigParserError

CONF_PATH = '/etc/rpi-fan.conf'

DEFAULTS = {
    'pwm': '0',
    'delay': '1.5',
    'zone': '0',
    'temperature': '50,60,80',
    'fan': '30,70,100',
}

MIN_SPEED = 0
MAX_SPEED = 100

# one day
MAX_DELAY = 86400


class FanError(Exception):
    pass


class ConfigError(FanError, ValueError):
    pass


class SensorError(FanError, OSError):
    pass


class ActuatorError(FanError, RuntimeError):
    pass


class Channel(enum.IntEnum):
    PWM0 = 0
    PWM1 = 1

    @property
    def pin(self):
        # physical header pins as numbered by mraa on the Raspberry Pi
        return {Channel.PWM0: 12, Channel.PWM1: 35}[self]


@dataclass(frozen=True)
class ResponseCurve:
    temperature_steps: tuple
    fan_speed_steps: tuple

    def __post_init__(self):
        object.__setattr__(self, 'temperature_steps', tuple(self.temperature_steps))
        object.__setattr__(self, 'fan_speed_steps', tuple(self.fan_speed_steps))

        if not self.temperature_steps:
            raise ConfigError('temperature steps must not be empty')
        if len(self.temperature_steps) != len(self.fan_speed_steps):
            raise ConfigError(
                'temperature steps and fan speed steps differ in length ({} != {})'.format(
                    len(self.temperature_steps), len(self.fan_speed_steps)))
        for lo, hi in zip(self.temperature_steps, self.temperature_steps[1:]):
            if not lo < hi:
                raise ConfigError(
                    'temperature steps must be strictly increasing ({} followed by {})'.format(lo, hi))


def fan_temp2dc(curve, t):
    """Map a temperature to a duty cycle in the unit of the fan speed steps.

    Below the first breakpoint the fan is off; past the last one the
    output saturates at the last fan speed.
    """
    temps, speeds = curve.temperature_steps, curve.fan_speed_steps

    if t < temps[0]:
        return 0.0

    for i in range(len(temps) - 1):
        if temps[i] <= t < temps[i + 1]:
            slope = (speeds[i + 1] - speeds[i]) / (temps[i + 1] - temps[i])
            return speeds[i] + slope * (t - temps[i])

    return float(speeds[-1])


@dataclass(frozen=True)
class Config:
    channel: Channel
    delay: float
    zone: int
    curve: ResponseCurve


def parse_steps(name, value):
    steps = []
    for token in re.split(r'[,\s]+', value.strip()):
        if not token:
            continue
        try:
            steps.append(float(token))
        except ValueError:
            raise ConfigError('{}: {!r} is not a number'.format(name, token)) from None
    if not steps:
        raise ConfigError('{}: no values given'.format(name))
    if not all(math.isfinite(x) for x in steps):
        raise ConfigError('{}: values must be finite'.format(name))
    return steps


def parse_channel(value):
    try:
        return Channel(int(value))
    except ValueError:
        choices = ', '.join(str(c.value) for c in Channel)
        raise ConfigError('pwm: {!r} is not a PWM channel (choose from {})'.format(value, choices)) from None


def parse_delay(value):
    try:
        delay = float(value)
    except ValueError:
        raise ConfigError('delay: {!r} is not a number'.format(value)) from None
    if not (math.isfinite(delay) and delay > 0):
        raise ConfigError('delay: must be a positive number of seconds, got {!r}'.format(value))
    if delay > MAX_DELAY:
        raise ConfigError('delay: must not exceed {} seconds, got {!r}'.format(MAX_DELAY, value))
    return delay


def parse_zone(value):
    try:
        zone = int(value)
    except ValueError:
        raise ConfigError('zone: {!r} is not an integer'.format(value)) from None
    if zone < 0:
        raise ConfigError('zone: must not be negative, got {}'.format(zone))
    return zone


def read_conf(path=CONF_PATH):
    """Return the raw option strings, defaults overlaid with the [fan] section of `path`.

    A missing file yields the defaults; a malformed one is a ConfigError.
    """
    conf = dict(DEFAULTS)

    cfg = ConfigParser(interpolation=None)
    try:
        found = cfg.read(path, encoding='utf-8')
    except (ConfigParserError, UnicodeDecodeError) as ex:
        raise ConfigError('{}: {}'.format(path, ex)) from None

    if found and cfg.has_section('fan'):
        for key, value in cfg.items('fan'):
            if key not in DEFAULTS:
                raise ConfigError('{}: unknown option {!r} in [fan]'.format(path, key))
            conf[key] = value

    return conf


def build_conf(raw):
    """Validate raw option strings into a Config."""
    fan_speeds = parse_steps('fan', raw['fan'])
    for speed in fan_speeds:
        if not MIN_SPEED <= speed <= MAX_SPEED:
            raise ConfigError('fan: {} is outside {}..{} percent'.format(speed, MIN_SPEED, MAX_SPEED))

    return Config(
        channel=parse_channel(raw['pwm']),
        delay=parse_delay(raw['delay']),
        zone=parse_zone(raw['zone']),
        curve=ResponseCurve(parse_steps('temperature', raw['temperature']), fan_speeds),
    )


def load_conf(path=CONF_PATH, overrides=None):
    raw = read_conf(path)
    for key, value in (overrides or {}).items():
        if value is not None:
            raw[key] = str(value)
    return build_conf(raw)
