#!/usr/bin/env python3
import sys
import signal
import logging
import argparse
import threading

import sdnotify

import fan
import misc

log = logging.getLogger('main')


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog='rpi-fan', description='Set Raspberry Pi fan speed based on CPU temperature.')
    parser.add_argument('action', nargs='?', choices=('on', 'off'), default='on',
                        help="'on' runs the control loop, 'off' stops the fan and exits")
    parser.add_argument('-c', '--config', default=misc.CONF_PATH,
                        help='configuration file (default: %(default)s, built-in defaults if missing)')
    parser.add_argument('-p', '--pwm', metavar='CHANNEL',
                        help='PWM channel, 0 or 1 (default: {})'.format(misc.DEFAULTS['pwm']))
    parser.add_argument('-d', '--delay', metavar='SECONDS',
                        help='how often temperature is polled (default: {})'.format(misc.DEFAULTS['delay']))
    parser.add_argument('-z', '--zone', metavar='INDEX',
                        help='thermal zone to read (default: {})'.format(misc.DEFAULTS['zone']))
    parser.add_argument('-t', '--temperature', metavar='STEPS',
                        help='temperature steps in °C (default: {})'.format(misc.DEFAULTS['temperature']))
    parser.add_argument('-f', '--fan', metavar='STEPS',
                        help='fan speed steps in percent (default: {})'.format(misc.DEFAULTS['fan']))
    parser.add_argument('-n', '--dry-run', action='store_true',
                        help='compute duty cycles without driving the PWM channel')
    parser.add_argument('-v', '--verbose', action='store_true')
    return parser.parse_args(argv)


def open_fan(conf, dry_run):
    if dry_run:
        return fan.DryRunFan(conf.channel)
    return fan.PwmFan(conf.channel)


def main(argv=None, notifier=None):
    args = parse_args(argv)

    logging.basicConfig(
        format='[%(asctime)s] %(levelname)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        level=logging.DEBUG if args.verbose else logging.INFO,
    )

    n = notifier or sdnotify.SystemdNotifier()
    stop = threading.Event()

    def shutdown(signum, frame):
        log.info('received %s, stopping', signal.Signals(signum).name)
        stop.set()

    handlers = {sig: signal.signal(sig, shutdown) for sig in (signal.SIGINT, signal.SIGTERM)}

    try:
        conf = misc.load_conf(args.config, {
            'pwm': args.pwm,
            'delay': args.delay,
            'zone': args.zone,
            'temperature': args.temperature,
            'fan': args.fan,
        })

        if args.action == 'off':
            n.notify('STOPPING=1')
            with open_fan(conf, args.dry_run):
                pass
            n.notify('STATUS=')
            log.info('%s set to off', conf.channel.name)
            return 0

        n.notify('STATUS=Starting...')
        log.info('%s, poll every %ss, thermal zone %d, temperature %s -> fan %s',
                 conf.channel.name, conf.delay, conf.zone,
                 list(conf.curve.temperature_steps), list(conf.curve.fan_speed_steps))

        sensor = fan.ThermalZone(conf.zone)
        with open_fan(conf, args.dry_run) as pwm:
            n.notify('READY=1')
            fan.running(conf, sensor, pwm, stop,
                        report=lambda t, dc: n.notify('STATUS=Active: {:.1f}°C, fan {:.0f}%'.format(t, dc)))
    except misc.FanError as ex:
        log.error('%s', ex)
        n.notify('STATUS=Failed: {}'.format(ex))
        return 1
    finally:
        for sig, handler in handlers.items():
            if handler is not None:
                signal.signal(sig, handler)

    n.notify('STOPPING=1')
    return 0


def run():
    sys.exit(main())


if __name__ == '__main__':
    run()
