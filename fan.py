#!/usr/bin/env python3
import os
import re
import logging
import threading

import misc

log = logging.getLogger(__name__)

THERMAL_BASE = '/sys/class/thermal'

# 25kHz, per the Noctua PWM white paper
PERIOD_US = 40
INVERTED = False


class ThermalZone:
    def __init__(self, zone, base=None):
        self.path = os.path.join(base or THERMAL_BASE, 'thermal_zone{}'.format(zone), 'temp')

    def read(self):
        """Current temperature in degrees Celsius."""
        try:
            with open(self.path, 'rb') as f:
                raw = f.read().decode('ascii')
        except OSError as ex:
            raise misc.SensorError('cannot read {}: {}'.format(self.path, ex.strerror or ex)) from ex
        except UnicodeDecodeError as ex:
            raise misc.SensorError('{}: not a text millidegree value ({})'.format(self.path, ex)) from ex

        if raw.endswith('\n'):
            raw = raw[:-1]
        if not re.fullmatch(r'[+-]?\d+', raw):
            raise misc.SensorError('{}: {!r} is not an integer millidegree value'.format(self.path, raw))

        return int(raw) / 1000.0


class PwmFan:
    """Hardware PWM channel driven through mraa.

    Takes duty cycles in percent. Opening enables the channel; closing
    writes 0 and disables it again.
    """

    def __init__(self, channel):
        self.channel = misc.Channel(channel)
        self.pwm = None

    def open(self):
        try:
            import mraa  # pylint: disable=import-error
        except ImportError as ex:
            raise misc.ActuatorError('cannot open {}: mraa is not installed'.format(self.channel.name)) from ex

        try:
            pwm = mraa.Pwm(self.channel.pin)
        except ValueError as ex:
            raise misc.ActuatorError('cannot open {}: {}'.format(self.channel.name, ex)) from ex
        self._check(pwm.period_us(PERIOD_US), 'set period on')
        self._check(pwm.enable(True), 'enable')

        self.pwm = pwm
        log.debug('%s enabled on pin %d, period %dus', self.channel.name, self.channel.pin, PERIOD_US)
        return self

    def write(self, dc):
        if self.pwm is None:
            raise misc.ActuatorError('{} is not open'.format(self.channel.name))

        ratio = dc / 100.0
        if INVERTED:
            ratio = 1.0 - ratio
        self._check(self.pwm.write(ratio), 'write to')

    def close(self):
        if self.pwm is None:
            return
        try:
            self.write(0)
        finally:
            try:
                self._check(self.pwm.enable(False), 'disable')
            finally:
                self.pwm = None
        log.debug('%s disabled', self.channel.name)

    def _check(self, result, what):
        # mraa returns a result code, 0 on success
        if result:
            raise misc.ActuatorError('failed to {} {} (mraa result {})'.format(what, self.channel.name, result))

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.close()
            return
        # keep the error that ended the loop, report the one from parking
        try:
            self.close()
        except misc.ActuatorError as ex:
            log.error('%s', ex)


class DryRunFan:
    """Stands in for PwmFan without touching hardware."""

    def __init__(self, channel):
        self.channel = misc.Channel(channel)
        self.dc = None

    def write(self, dc):
        self.dc = dc
        log.debug('[dry run] %s <- %.1f%%', self.channel.name, dc)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.write(0)


def running(conf, sensor, fan, stop=None, report=None):
    """Sample, map and actuate every `conf.delay` seconds until `stop` is set.

    Any sensor or actuator error propagates and ends the loop.
    """
    if stop is None:
        stop = threading.Event()

    while True:
        t = sensor.read()
        dc = misc.fan_temp2dc(conf.curve, t)
        fan.write(dc)

        log.info('temp=%.1f°C duty=%.1f%%', t, dc)
        if report is not None:
            report(t, dc)

        if stop.wait(conf.delay):
            return
