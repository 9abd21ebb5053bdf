#pylint: disable=wrong-import-position,wrong-import-order,superfluous-parens
import os
import argparse
import subprocess
import sys
import cisetup
import cisetup.exceptions
from cisetup import registry, proxy, nexus, checks, deploy

choices = ['setup-registry',
           'setup-nexus',
           'check-uncommitted',
           'push-to-central',
           'render-proxy-config']

parser = argparse.ArgumentParser(prog='cisetup')
subparsers = parser.add_subparsers(dest='op')
for c in choices:
    sp = subparsers.add_parser(c)
    if c == 'check-uncommitted':
        sp.add_argument('excludes', nargs='*')

def _setting(environ, name, default):
    # Empty counts as unset, like ${VAR:-default}
    return environ.get(name) or default

def _port(environ, name, default):
    value = _setting(environ, name, default)
    try:
        port = int(value)
    except ValueError:
        raise cisetup.exceptions.InvalidSettingError(name, value)
    if not 0 < port < 65536:
        raise cisetup.exceptions.InvalidSettingError(name, value)
    return port

def _flag(environ, name, default):
    return _setting(environ, name, default) != '0'

def doit(args, environ):
    args = parser.parse_args(args)
    if args.op is None:
        parser.error('too few arguments')

    progress = bool(environ.get('CISETUP_PROGRESS'))
    sudo = environ.get('CISETUP_SUDO', cisetup.DEFAULT_SUDO)

    def _doit():
        # pylint: disable=too-many-return-statements
        if args.op == 'setup-registry':
            registry.RegistrySetup(cisetup.detect_runtime(),
                                   hostname=_setting(environ, 'REGISTRY_HOSTNAME', 'registry.strimzi'),
                                   port=_port(environ, 'REGISTRY_PORT', '5000'),
                                   username=_setting(environ, 'REGISTRY_USERNAME', 'testuser'),
                                   password=_setting(environ, 'REGISTRY_PASSWORD', 'testpass'),
                                   image=_setting(environ, 'REGISTRY_IMAGE', 'registry:3'),
                                   use_proxy=_flag(environ, 'REGISTRY_PROXY', '1'),
                                   sudo=sudo,
                                   progress=progress,
                                   environ=environ).run()

        elif args.op == 'setup-nexus':
            nexus.NexusSetup(cisetup.detect_runtime(),
                             url=_setting(environ, 'NEXUS_URL', 'http://localhost:8081'),
                             image=_setting(environ, 'NEXUS_IMAGE', 'sonatype/nexus3:3.87.2'),
                             settings_dir=_setting(environ, 'SETTINGS_DIR', 'github-actions/.github/test-settings'),
                             progress=progress,
                             environ=environ).run()

        elif args.op == 'check-uncommitted':
            if not checks.check_uncommitted(checks.DEFAULT_EXCLUDES + tuple(args.excludes)):
                return 1

        elif args.op == 'push-to-central':
            deploy.push_to_central(environ)

        elif args.op == 'render-proxy-config':
            sys.stdout.write(proxy.render_config(_setting(environ, 'REGISTRY_HOSTNAME', 'registry.strimzi'),
                                                 registry.INTERNAL_PORT,
                                                 _port(environ, 'REGISTRY_PORT', '5000')))

        return 0

    try:
        return _doit()
    except cisetup.exceptions.CISetupError as ex:
        print('❌ ' + str(ex), file=sys.stderr)
        return 1
    except subprocess.CalledProcessError as ex:
        print('❌ ' + str(ex), file=sys.stderr)
        return 1

def main():
    sys.exit(doit(sys.argv[1:], os.environ))
