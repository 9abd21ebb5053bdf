"""
Module for bootstrapping ephemeral CI test infrastructure
"""

from typing import Optional, Union, List, Callable, Tuple, Dict, Sequence, Mapping, TypeVar
from types import ModuleType
import os
import shlex
import shutil
import subprocess
import time
import warnings

import urllib.parse as urlparse

import requests
from urllib3.exceptions import InsecureRequestWarning
import tqdm

from cisetup import exceptions

DEFAULT_SUDO = 'sudo'

DEVNULL = subprocess.DEVNULL

# Note: From Python 3.11 onwards we can use typing.Self instead of this
T = TypeVar('T', bound='ServiceClient')

def status_text(code: Optional[int]) -> str:
    """
    Format a probe result the way curl's ``%{http_code}`` does.

    :param code: HTTP status code, or ``None`` if the connection failed.

    :returns: Three-digit status, ``000`` for a failed connection.
    """
    return '000' if code is None else str(code)

def privileged(sudo: Optional[str], cmd: Sequence[str]) -> List[str]:
    """
    Prefix a command with the privilege escalation command.

    :param sudo: Command used to gain root, e.g. ``sudo``. Empty or ``None`` runs the command as is.

    :param cmd: Command and arguments.

    :returns: Command line to pass to :mod:`subprocess`.
    """
    return (shlex.split(sudo) if sudo else []) + list(cmd)

def write_privileged(sudo, path, content, append=False):
    cmd = ['tee'] + (['-a'] if append else []) + [path]
    subprocess.run(privileged(sudo, cmd),
                   input=content.encode('utf-8'),
                   stdout=DEVNULL,
                   check=True)

def copy_privileged(sudo, src, dst):
    subprocess.check_call(privileged(sudo, ['cp', src, dst]))

def mkdir_privileged(sudo, path):
    subprocess.check_call(privileged(sudo, ['mkdir', '-p', path]))

def export_env(environ: Mapping[str, str], **values: str) -> bool:
    """
    Export variables to later steps of a GitHub Actions job by appending
    ``KEY=value`` lines to the file named by ``GITHUB_ENV``.

    :param environ: Environment to read ``GITHUB_ENV`` from.

    :param values: Variables to export.

    :returns: Whether anything was written. Nothing is written when ``GITHUB_ENV`` is unset or ``/dev/null``.
    """
    path = environ.get('GITHUB_ENV')
    if not path or path == os.devnull:
        return False
    with open(path, 'a', encoding='utf8') as f:
        for name, value in values.items():
            f.write('%s=%s\n' % (name, value))
    return True

def wait_until(check: Callable[[], Tuple[bool, str]],
               timeout: int,
               interval: int,
               description: str,
               progress: bool=False,
               sleep: Optional[Callable[[float], None]]=None) -> bool:
    # pylint: disable=too-many-arguments
    """
    Poll a service at a fixed interval until it reports ready.

    :param check: Called once per attempt. Returns whether the service is ready and a short detail (e.g. the HTTP status) to display.

    :param timeout: Total number of seconds to keep polling.

    :param interval: Seconds to sleep between attempts.

    :param description: Name of the service, shown on the progress bar.

    :param progress: Show a `tqdm <https://github.com/tqdm/tqdm>`_ progress bar on stderr instead of printing one line per attempt.

    :param sleep: Function used to sleep between attempts. Defaults to :func:`time.sleep`.

    :returns: ``True`` if the service became ready, ``False`` if ``timeout`` elapsed first.
    """
    sleep = sleep or time.sleep
    elapsed = 0
    bar = tqdm.tqdm(desc=description, total=timeout, unit='s', leave=False) if progress else None
    try:
        while elapsed < timeout:
            ready, detail = check()
            if ready:
                return True
            sleep(interval)
            elapsed += interval
            if bar is None:
                print('Waiting... (%ds/%ds) [%s]' % (elapsed, timeout, detail))
            else:
                bar.set_postfix_str(detail)
                bar.update(interval)
        return False
    finally:
        if bar is not None:
            bar.close()

class ContainerRuntime(object):
    """
    Thin wrapper around the ``docker`` or ``podman`` command line.
    Both accept the same arguments for everything used here.
    """
    def __init__(self, command: str):
        """
        :param command: Name of the runtime executable, ``docker`` or ``podman``.
        """
        self.command = command

    @property
    def is_docker(self) -> bool:
        return self.command == 'docker'

    def _cmd(self, *args):
        return [self.command] + list(args)

    def exists(self, name: str, running_only: bool=False) -> bool:
        """
        :param name: Container name.

        :param running_only: Ignore stopped containers.

        :returns: Whether a container with exactly this name exists.
        """
        args = ['ps', '--format', '{{.Names}}']
        if not running_only:
            args.insert(1, '-a')
        out = subprocess.check_output(self._cmd(*args)).decode('utf-8')
        return name in out.splitlines()

    def remove(self, name: str):
        subprocess.call(self._cmd('stop', name), stdout=DEVNULL)
        subprocess.call(self._cmd('rm', name), stdout=DEVNULL)

    def run(self, image: str,
            name: Optional[str]=None,
            ports: Sequence[str]=(),
            volumes: Sequence[str]=(),
            env: Optional[Dict[str, str]]=None,
            extra: Sequence[str]=(),
            args: Sequence[str]=(),
            detach: bool=True,
            remove: bool=False,
            entrypoint: Optional[str]=None) -> str:
        # pylint: disable=too-many-arguments
        """
        Run a container.

        :param image: Image reference.

        :param name: Container name.

        :param ports: ``host:container`` port mappings.

        :param volumes: ``source:target[:options]`` mounts.

        :param env: Environment variables to set in the container.

        :param extra: Other options, inserted before the image.

        :param args: Arguments passed to the container's entrypoint.

        :param detach: Run in the background.

        :param remove: Remove the container when it exits.

        :param entrypoint: Override the image's entrypoint.

        :returns: The command's stdout (the container ID when detached).
        """
        cmd = self._cmd('run')
        if detach:
            cmd.append('-d')
        if remove:
            cmd.append('--rm')
        if name:
            cmd += ['--name', name]
        if entrypoint:
            cmd += ['--entrypoint', entrypoint]
        for port in ports:
            cmd += ['-p', port]
        for volume in volumes:
            cmd += ['-v', volume]
        for k, v in (env or {}).items():
            cmd += ['-e', k + '=' + v]
        cmd += list(extra)
        cmd.append(image)
        cmd += list(args)
        return subprocess.check_output(cmd).decode('utf-8')

    def logs(self, name: str):
        subprocess.call(self._cmd('logs', name))

    def exec_output(self, name: str, *cmd: str) -> str:
        """
        Run a command in a running container.

        :returns: The command's stripped stdout, or an empty string if it failed.
        """
        r = subprocess.run(self._cmd('exec', name, *cmd), stdout=subprocess.PIPE, stderr=DEVNULL)
        if r.returncode != 0:
            return ''
        return r.stdout.decode('utf-8').strip()

    def login(self, url: str, username: str, password: str) -> bool:
        r = subprocess.run(self._cmd('login', url, '-u', username, '--password-stdin'),
                           input=password.encode('utf-8'),
                           stdout=DEVNULL,
                           stderr=DEVNULL)
        return r.returncode == 0

    def info(self) -> bool:
        return subprocess.call(self._cmd('info'), stdout=DEVNULL, stderr=DEVNULL) == 0

def detect_runtime(which: Optional[Callable[[str], Optional[str]]]=None) -> ContainerRuntime:
    """
    Find a container runtime, preferring docker over podman.

    :param which: Function used to look up executables on the ``PATH``. Defaults to :func:`shutil.which`.

    :returns: The runtime found.
    """
    which = which or shutil.which
    for command in ('docker', 'podman'):
        if which(command):
            print('Using ' + command)
            return ContainerRuntime(command)
    raise exceptions.NoContainerRuntimeError()

def _raise_for_status(r):
    # pylint: disable=no-member
    if r.status_code == requests.codes.unauthorized:
        raise exceptions.UnauthorizedError()
    r.raise_for_status()

def _ignore_warnings(obj):
    # pylint: disable=protected-access
    if obj._tlsverify is False:
        warnings.filterwarnings('ignore', category=InsecureRequestWarning)

class ServiceClient(object):
    """
    Class for talking HTTP to one of the services being set up.

    Can act as a context manager. For each context entered, a new
    `requests.Session <http://docs.python-requests.org/en/latest/user/advanced/#session-objects>`_
    is obtained. Connections to the same host are shared by the session.
    When the context exits, all the session's connections are closed.

    If you don't use :class:`ServiceClient` as a context manager, each request
    uses an ephemeral session.
    """
    def __init__(self, host: str,
            auth: Optional[Tuple[str, str]]=None, insecure: bool=False,
            tlsverify: Union[bool, str]=True, timeout: Optional[float]=None):
        # pylint: disable=too-many-arguments
        """
        :param host: Host name of the service. Can contain port numbers. e.g. ``registry.strimzi:443``, ``localhost:8081``.

        :param auth: Username and password sent with every request using HTTP Basic auth.

        :param insecure: Use HTTP instead of HTTPS (which is the default) when connecting to the service.

        :param tlsverify: When set to False, do not verify TLS certificate. When pointed to a `<ca bundle>.crt` file use this for TLS verification. See `requests.verify <http://docs.python-requests.org/en/latest/user/advanced/#ssl-cert-verification>`_ for more details.

        :param timeout: Optional timeout for requests. See `requests.timeout <https://requests.readthedocs.io/en/latest/user/quickstart/#timeouts>`_ for more details.
        """
        self._base_url = ('http' if insecure else 'https') + '://' + host + '/'
        self._host = host
        self._auth = auth
        self._insecure = insecure
        self._sessions: List[Union[ModuleType, requests.Session]] = [requests]
        self._tlsverify = tlsverify
        self._timeout = timeout

    @property
    def base_url(self) -> str:
        return self._base_url

    def request(self, method: str, path: str, **kwargs) -> requests.Response:
        """
        Make a request without checking the response status.
        Keyword arguments are passed to `requests` and override the client's defaults, e.g. ``auth=None`` sends the request anonymously.
        """
        def make_kwargs():
            r = {'allow_redirects': True,
                 'verify': self._tlsverify,
                 'timeout': self._timeout,
                 'auth': self._auth}
            r.update(kwargs)
            return r
        url = urlparse.urljoin(self._base_url, path)
        with warnings.catch_warnings():
            _ignore_warnings(self)
            return getattr(self._sessions[0], method)(url, **make_kwargs())

    def checked_request(self, method: str, path: str, **kwargs) -> requests.Response:
        r = self.request(method, path, **kwargs)
        _raise_for_status(r)
        return r

    def probe(self, path: str, **kwargs) -> Optional[int]:
        """
        :returns: Status code of a ``GET`` request to ``path``, or ``None`` if no response was received.
        """
        try:
            return self.request('get', path, **kwargs).status_code
        except requests.exceptions.RequestException:
            return None

    def __enter__(self: T) -> T:
        assert self._sessions
        session = requests.Session()
        session.__enter__()
        self._sessions.insert(0, session)
        return self

    def __exit__(self, *args):
        assert len(self._sessions) > 1
        session = self._sessions.pop(0)
        return session.__exit__(*args)
