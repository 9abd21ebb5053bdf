"""
Deploy already-built Maven artifacts, signed with a key imported for the
duration of the deployment
"""

from typing import List, Mapping, Optional
import base64
import os
import shlex
import subprocess
import sys

import gnupg

from cisetup import exceptions

def _gpg_tty():
    try:
        return os.ttyname(sys.stdin.fileno())
    except (OSError, ValueError):
        return None

class SigningKey(object):
    """
    Context manager which imports a GPG key and removes it again on exit,
    whether or not the body succeeded.
    """
    def __init__(self, encoded: str, gnupghome: Optional[str]=None):
        """
        :param encoded: Base64-encoded (armored or binary) key.

        :param gnupghome: GPG home directory. Defaults to gpg's own (``GNUPGHOME`` or ``~/.gnupg``).
        """
        self._encoded = encoded
        self._gpg = gnupg.GPG(gnupghome=gnupghome)
        self.fingerprints: List[str] = []

    def __enter__(self):
        try:
            data = base64.b64decode(self._encoded)
        except ValueError as ex:
            raise exceptions.KeyImportError('key is not valid base64 (%s)' % ex)
        result = self._gpg.import_keys(data)
        self.fingerprints = list(dict.fromkeys(result.fingerprints or []))
        if not self.fingerprints:
            raise exceptions.KeyImportError((result.stderr or '').strip())
        return self

    def __exit__(self, *args):
        self.cleanup()

    def cleanup(self):
        if self.fingerprints:
            # Secret keys must go before gpg will delete the public keys
            self._gpg.delete_keys(self.fingerprints, secret=True, expect_passphrase=False)
            self._gpg.delete_keys(self.fingerprints)
        self.fingerprints = []

def build_maven_command(mvn_args: Optional[str], settings_path: str, modules: str,
                        deployment_url: Optional[str]=None) -> List[str]:
    """
    Build the ``mvn deploy`` command line. Compilation, tests and install are
    skipped; the artifacts must already be built. The ``central`` profile
    configures signing and the publishing plugin.

    :param mvn_args: Extra arguments, split like a shell would.

    :param settings_path: Maven settings file.

    :param modules: Comma-separated list of modules to deploy.

    :param deployment_url: Base URL of a repository manager to deploy to instead of Maven Central. ``/maven-releases`` and ``/maven-snapshots`` are appended.
    """
    cmd = ['mvn'] + shlex.split(mvn_args or '') + [
        '-DskipTests',
        '-Dmaven.main.skip=true',
        '-Dmaven.test.skip=true',
        '-Dmaven.install.skip=true',
        '-s', settings_path,
        '-pl', modules,
        '-P', 'central']
    if deployment_url:
        # The plugin picks releases or snapshots from the artifact version
        cmd += ['-DcentralBaseUrl=%s/maven-releases' % deployment_url,
                '-DcentralSnapshotsUrl=%s/maven-snapshots' % deployment_url]
    cmd.append('deploy')
    return cmd

def push_to_central(environ: Mapping[str, str]):
    """
    Deploy using settings from the environment: ``GPG_SIGNING_KEY``,
    ``SETTINGS_PATH`` and ``MODULES`` are required, ``MVN_ARGS`` and
    ``DEPLOYMENT_URL`` are optional.
    """
    for name in ('GPG_SIGNING_KEY', 'SETTINGS_PATH', 'MODULES'):
        if not environ.get(name):
            raise exceptions.MissingSettingError(name)

    env = dict(environ)
    env['GPG_EXECUTABLE'] = 'gpg'
    tty = _gpg_tty()
    if tty:
        env['GPG_TTY'] = tty

    deployment_url = environ.get('DEPLOYMENT_URL')
    cmd = build_maven_command(environ.get('MVN_ARGS'),
                              environ['SETTINGS_PATH'],
                              environ['MODULES'],
                              deployment_url)

    with SigningKey(environ['GPG_SIGNING_KEY'], gnupghome=environ.get('GNUPGHOME') or None):
        if deployment_url:
            print('Deploying to custom repository: ' + deployment_url)
        else:
            print('Deploying to Maven Central (default)')
        subprocess.check_call(cmd, env=env)
