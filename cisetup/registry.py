"""
Docker registry with htpasswd authentication and TLS, optionally behind
the protocol-detecting proxy in :mod:`cisetup.proxy`.

Architecture with the proxy enabled::

    Docker CLI -> nginx (HTTP or HTTPS, REGISTRY_PORT) -> registry (HTTPS, 443)
"""

from typing import Optional, Tuple, Mapping
import json
import os
import subprocess
import tempfile

import requests
import www_authenticate # type: ignore

from cisetup import exceptions, certs, proxy, ServiceClient, wait_until, export_env, \
                    privileged, write_privileged, status_text, DEFAULT_SUDO

REGISTRY_CONTAINER = 'test-registry'
HTPASSWD_IMAGE = 'httpd:2'
INTERNAL_PORT = 443
REALM = 'Registry Realm'

DAEMON_JSON = '/etc/docker/daemon.json'
HOSTS_FILE = '/etc/hosts'

REGISTRY_TIMEOUT = 60
REGISTRY_INTERVAL = 2
DOCKER_TIMEOUT = 30
DOCKER_INTERVAL = 1

def merge_insecure_registries(text: Optional[str], url: str) -> dict:
    """
    Add a registry to the ``insecure-registries`` list of a docker daemon.json.

    :param text: Existing daemon.json contents, if any.

    :param url: ``host:port`` of the registry.

    :returns: New configuration. Other settings are kept; the list is de-duplicated and sorted.
    """
    config = json.loads(text) if text and text.strip() else {}
    if not isinstance(config, dict):
        raise ValueError('expected a JSON object')
    registries = config.get('insecure-registries')
    if registries is None:
        config['insecure-registries'] = [url]
    elif not isinstance(registries, list):
        raise ValueError('insecure-registries is not a list')
    else:
        config['insecure-registries'] = sorted(set(registries + [url]))
    return config

class RegistryClient(ServiceClient):
    """
    Checks a Docker v2 registry's API root, ``/v2/``.
    """
    def check_ready(self) -> Tuple[bool, str]:
        """
        :returns: Whether ``/v2/`` answered 200 with the client's credentials, and the status seen.
        """
        code = self.probe('v2/')
        # pylint: disable=no-member
        return code == requests.codes.ok, status_text(code)

    def challenge(self) -> dict:
        """
        Request ``/v2/`` anonymously.

        :returns: Parsed ``WWW-Authenticate`` header, keyed by (case-insensitive) scheme.
        """
        r = self.request('get', 'v2/', auth=None)
        # pylint: disable=no-member
        if r.status_code != requests.codes.unauthorized:
            raise exceptions.UnexpectedStatusCodeError(r.status_code,
                                                       requests.codes.unauthorized)
        return www_authenticate.parse(r.headers.get('www-authenticate', ''))

    def require_auth(self) -> Optional[str]:
        """
        Check anonymous requests are rejected with a HTTP Basic challenge.

        :returns: The challenge's realm.
        """
        parsed = self.challenge()
        if 'basic' not in parsed:
            raise exceptions.UnexpectedChallengeError(', '.join(parsed) or 'none', 'basic')
        try:
            return parsed['basic']['realm']
        except (KeyError, TypeError):
            return None

class RegistrySetup(object):
    # pylint: disable=too-many-instance-attributes
    """
    Bootstraps a registry for a CI job. Call :meth:`run` to do everything in order.
    """
    def __init__(self, runtime,
                 hostname: str='registry.strimzi',
                 port: int=5000,
                 username: str='testuser',
                 password: str='testpass',
                 image: str='registry:3',
                 use_proxy: bool=True,
                 sudo: Optional[str]=DEFAULT_SUDO,
                 progress: bool=False,
                 environ: Optional[Mapping[str, str]]=None,
                 daemon_json: str=DAEMON_JSON,
                 hosts_file: str=HOSTS_FILE):
        # pylint: disable=too-many-arguments
        """
        :param runtime: :class:`cisetup.ContainerRuntime` to start containers with.

        :param hostname: Name the registry is reached by. It's mapped to ``127.0.0.1`` in ``hosts_file``.

        :param port: External port clients use when ``use_proxy`` is set.

        :param username: Registry user.

        :param password: Registry user's password.

        :param image: Registry image.

        :param use_proxy: Put the protocol-detecting nginx proxy in front of the registry. Otherwise clients use the registry's own port (443).

        :param sudo: Command used for steps which need root.

        :param progress: Show progress bars while waiting.

        :param environ: Environment holding ``GITHUB_ENV``.
        """
        self.runtime = runtime
        self.hostname = hostname
        self.port = port
        self.username = username
        self.password = password
        self.image = image
        self.use_proxy = use_proxy
        self.sudo = sudo
        self.progress = progress
        self.environ = environ if environ is not None else os.environ
        self.daemon_json = daemon_json
        self.hosts_file = hosts_file
        self.internal_url = '%s:%d' % (hostname, INTERNAL_PORT)
        self.url = '%s:%d' % (hostname, port) if use_proxy else self.internal_url
        self.auth_dir: Optional[str] = None
        self.certs_dir: Optional[str] = None
        self.cert: Optional[str] = None
        self.key: Optional[str] = None

    def client(self, auth: bool=True) -> RegistryClient:
        return RegistryClient(self.internal_url,
                              (self.username, self.password) if auth else None,
                              tlsverify=self.cert or True,
                              timeout=10)

    def add_hosts_entry(self):
        print('>>> Adding %s to %s...' % (self.hostname, self.hosts_file))
        write_privileged(self.sudo, self.hosts_file, '127.0.0.1 %s\n' % self.hostname, append=True)
        print('✓ Hostname added to ' + self.hosts_file)

    def configure_insecure_registry(self):
        print('>>> Configuring Docker daemon with insecure-registries for HTTP endpoint...')
        existing = None
        if os.path.isfile(self.daemon_json):
            with open(self.daemon_json, 'r', encoding='utf8') as f:
                existing = f.read()
        try:
            config = merge_insecure_registries(existing, self.url)
        except ValueError as ex:
            raise exceptions.DaemonConfigError(self.daemon_json, ex)
        content = json.dumps(config, indent=2) + '\n'
        write_privileged(self.sudo, self.daemon_json, content)
        print('✓ Docker daemon.json configured for HTTP endpoint')
        print(content, end='')

    def make_dirs(self):
        self.auth_dir = tempfile.mkdtemp()
        self.certs_dir = tempfile.mkdtemp()
        print('Auth directory: ' + self.auth_dir)
        print('Certs directory: ' + self.certs_dir)

    def generate_certificate(self):
        print('>>> Generating self-signed TLS certificate for %s...' % self.hostname)
        self.cert, self.key = certs.generate_certificate(self.certs_dir, self.hostname)
        print('✓ TLS certificate generated')

    def install_trust(self):
        print('>>> Installing certificate to system trust store...')
        certs.install_trust(self.cert, self.hostname, self.sudo)
        print('>>> Configuring Docker to trust the registry certificate...')
        urls = [self.internal_url]
        if self.url != self.internal_url:
            urls.append(self.url)
        certs.install_docker_trust(self.cert, urls, self.sudo)
        print('✓ Docker configured to trust registry certificate')

    def restart_docker(self):
        print('>>> Restarting Docker daemon to apply certificate configuration...')
        subprocess.check_call(privileged(self.sudo, ['systemctl', 'restart', 'docker']))
        print('>>> Waiting for Docker daemon to be ready...')
        if not wait_until(lambda: (self.runtime.info(), 'docker info'),
                          DOCKER_TIMEOUT, DOCKER_INTERVAL,
                          'docker', self.progress):
            raise exceptions.ServiceNotReadyError('Docker daemon', DOCKER_TIMEOUT)
        print('✓ Docker daemon restarted and ready')

    def generate_htpasswd(self):
        print('>>> Generating htpasswd file...')
        out = self.runtime.run(HTPASSWD_IMAGE,
                               entrypoint='htpasswd',
                               args=['-Bbn', self.username, self.password],
                               detach=False,
                               remove=True)
        with open(os.path.join(self.auth_dir, 'htpasswd'), 'w', encoding='utf8') as f:
            f.write(out)
        if not out.strip():
            raise exceptions.CredentialsGenerationError('htpasswd file')
        print('✓ htpasswd file generated')

    def start_registry(self):
        if self.runtime.exists(REGISTRY_CONTAINER):
            print('>>> Stopping existing registry container...')
            self.runtime.remove(REGISTRY_CONTAINER)

        print('>>> Starting Docker Registry with TLS on port %d...' % INTERNAL_PORT)
        self.runtime.run(self.image,
                         name=REGISTRY_CONTAINER,
                         ports=['%d:443' % INTERNAL_PORT],
                         volumes=[self.auth_dir + ':/auth',
                                  self.certs_dir + ':/certs'],
                         env={'REGISTRY_AUTH': 'htpasswd',
                              'REGISTRY_AUTH_HTPASSWD_REALM': REALM,
                              'REGISTRY_AUTH_HTPASSWD_PATH': '/auth/htpasswd',
                              'REGISTRY_HTTP_ADDR': '0.0.0.0:443',
                              'REGISTRY_HTTP_TLS_CERTIFICATE': '/certs/domain.crt',
                              'REGISTRY_HTTP_TLS_KEY': '/certs/domain.key'})

    def wait_for_registry(self):
        print('>>> Waiting for registry to be ready...')
        if not wait_until(self.client().check_ready,
                          REGISTRY_TIMEOUT, REGISTRY_INTERVAL,
                          'registry', self.progress):
            self.runtime.logs(REGISTRY_CONTAINER)
            raise exceptions.ServiceNotReadyError('Registry', REGISTRY_TIMEOUT)
        print('✓ Registry is ready and accepting authenticated HTTPS requests')

    def verify_auth(self):
        realm = self.client(auth=False).require_auth()
        print('✓ Registry rejects anonymous requests (realm: %s)' % realm)

    def start_proxy(self):
        p = proxy.ProxySetup(self.runtime, self.hostname, self.port, INTERNAL_PORT,
                             self.cert, self.key, self.username, self.password)
        p.start()
        p.verify()

    def login(self):
        print('>>> Testing %s login through %s...' % (self.runtime.command, self.url))
        if not self.runtime.login(self.url, self.username, self.password):
            if self.use_proxy:
                self.runtime.logs(proxy.PROXY_CONTAINER)
            self.runtime.logs(REGISTRY_CONTAINER)
            raise exceptions.LoginError(self.url)
        print('✓ Login successful')

    def summary(self):
        print('')
        print('==========================================')
        print('Docker Registry Setup Complete')
        print('==========================================')
        print('Registry URL: ' + self.url)
        print('Internal URL: %s (HTTPS)' % self.internal_url)
        print('Hostname: ' + self.hostname)
        print('Username: ' + self.username)
        print('Password: ' + self.password)
        if self.use_proxy:
            print('')
            print('Architecture (nginx protocol detection):')
            print('  HTTPS requests -> nginx:%d -> TLS termination -> registry:%d' % (self.port, INTERNAL_PORT))
            print('  HTTP requests  -> nginx:%d -> proxy -> registry:%d' % (self.port, INTERNAL_PORT))
            print('')
            print('This works around docker manifest bugs:')
            print('  - manifest create uses HTTPS')
            print('  - manifest push uses HTTP (bug)')
        print('==========================================')

    def run(self):
        print('>>> Setting up Docker Registry...')
        print('Registry URL (external): ' + self.url)
        print('Registry URL (internal): %s (HTTPS)' % self.internal_url)
        print('Username: ' + self.username)

        self.add_hosts_entry()
        if self.use_proxy:
            self.configure_insecure_registry()
        self.make_dirs()
        self.generate_certificate()
        self.install_trust()
        if self.runtime.is_docker:
            self.restart_docker()
        self.generate_htpasswd()
        self.start_registry()
        self.wait_for_registry()
        self.verify_auth()
        if self.use_proxy:
            self.start_proxy()
        self.login()
        export_env(self.environ,
                   REGISTRY_URL=self.url,
                   REGISTRY_USERNAME=self.username,
                   REGISTRY_PASSWORD=self.password)
        self.summary()
