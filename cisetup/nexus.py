"""
Nexus repository manager for testing Maven deployments
"""

from typing import Optional, Tuple, Mapping
import json
import os
import time
import xml.etree.ElementTree as ET

import urllib.parse as urlparse

import requests

from cisetup import exceptions, ServiceClient, wait_until, export_env, status_text

NEXUS_CONTAINER = 'nexus'
NEXUS_PORT = 8081
ADMIN_USER = 'admin'
ADMIN_PASSWORD_FILE = '/nexus-data/admin.password'

EULA_PATH = 'service/rest/v1/system/eula'
ANONYMOUS_PATH = 'service/rest/v1/security/anonymous'

NEXUS_TIMEOUT = 180
NEXUS_INTERVAL = 5
INIT_DELAY = 10
EULA_DELAY = 2

SETTINGS_NS = 'http://maven.apache.org/SETTINGS/1.0.0'
# Server id used by the central publishing profile
SERVER_ID = 'central'

class NexusClient(ServiceClient):
    """
    Client for the parts of the Nexus REST API used to prepare a fresh instance.
    """
    def __init__(self, url: str, auth: Optional[Tuple[str, str]]=None, timeout: Optional[float]=15):
        """
        :param url: Base URL of Nexus, e.g. ``http://localhost:8081``.

        :param auth: Admin username and password.

        :param timeout: Request timeout.
        """
        parts = urlparse.urlsplit(url)
        super(NexusClient, self).__init__(parts.netloc, auth, parts.scheme == 'http', True, timeout)
        self._base_url = url.rstrip('/') + '/'

    def check_up(self) -> Tuple[bool, str]:
        code = self.probe('', auth=None)
        return code is not None and code < 400, status_text(code)

    def get_eula_disclaimer(self) -> Optional[str]:
        """
        :returns: The disclaimer text Nexus expects to be sent back when the EULA is accepted.
        """
        body = self.checked_request('get', EULA_PATH).json()
        if not isinstance(body, dict):
            raise ValueError('unexpected EULA response: %r' % (body,))
        return body.get('disclaimer')

    def accept_eula(self, disclaimer: Optional[str]):
        self.checked_request('post', EULA_PATH,
                             json={'accepted': True, 'disclaimer': disclaimer})

    def disable_anonymous(self):
        self.checked_request('put', ANONYMOUS_PATH,
                             json={'enabled': False,
                                   'userId': 'anonymous',
                                   'realmName': 'NexusAuthorizingRealm'})

def write_maven_settings(settings_dir: str, username: str, password: str) -> str:
    """
    Write a Maven ``settings.xml`` holding credentials for the Nexus deployment.

    :param settings_dir: Directory to create the file in. Created if missing.

    :returns: Path of the file written.
    """
    os.makedirs(settings_dir, exist_ok=True)
    ET.register_namespace('', SETTINGS_NS)
    settings = ET.Element('{%s}settings' % SETTINGS_NS)
    servers = ET.SubElement(settings, '{%s}servers' % SETTINGS_NS)
    server = ET.SubElement(servers, '{%s}server' % SETTINGS_NS)
    for tag, text in (('id', SERVER_ID), ('username', username), ('password', password)):
        ET.SubElement(server, '{%s}%s' % (SETTINGS_NS, tag)).text = text
    path = os.path.join(settings_dir, 'settings.xml')
    ET.ElementTree(settings).write(path, encoding='utf-8', xml_declaration=True)
    return path

class NexusSetup(object):
    # pylint: disable=too-many-instance-attributes
    """
    Starts Nexus, retrieves the generated admin password, accepts the EULA
    and disables anonymous access.
    """
    def __init__(self, runtime,
                 url: str='http://localhost:8081',
                 image: str='sonatype/nexus3:3.87.2',
                 settings_dir: Optional[str]=None,
                 progress: bool=False,
                 environ: Optional[Mapping[str, str]]=None):
        # pylint: disable=too-many-arguments
        self.runtime = runtime
        self.url = url
        self.image = image
        self.settings_dir = settings_dir
        self.progress = progress
        self.environ = environ if environ is not None else os.environ
        self.port = urlparse.urlsplit(url).port or NEXUS_PORT
        self.password: Optional[str] = None

    def start(self):
        if self.runtime.exists(NEXUS_CONTAINER):
            print('>>> Stopping existing Nexus container...')
            self.runtime.remove(NEXUS_CONTAINER)
        print('>>> Starting Nexus container...')
        self.runtime.run(self.image,
                         name=NEXUS_CONTAINER,
                         ports=['%d:%d' % (self.port, NEXUS_PORT)])

    def wait(self):
        print('>>> Waiting for Nexus to start...')
        if not wait_until(NexusClient(self.url).check_up,
                          NEXUS_TIMEOUT, NEXUS_INTERVAL,
                          'nexus', self.progress):
            self.runtime.logs(NEXUS_CONTAINER)
            raise exceptions.ServiceNotReadyError('Nexus', NEXUS_TIMEOUT)
        print('✓ Nexus is responding')

        print('>>> Waiting for Nexus to fully initialize...')
        time.sleep(INIT_DELAY)

    def retrieve_password(self) -> str:
        print('>>> Retrieving admin password...')
        password = self.runtime.exec_output(NEXUS_CONTAINER, 'cat', ADMIN_PASSWORD_FILE)
        if not password:
            raise exceptions.CredentialsGenerationError('Nexus admin password')
        print('✓ Admin password retrieved')
        self.password = password
        export_env(self.environ, NEXUS_PASSWORD=password)
        return password

    def configure(self):
        client = NexusClient(self.url, (ADMIN_USER, self.password))

        print('>>> Accepting Nexus EULA...')
        try:
            disclaimer = client.get_eula_disclaimer()
            print('Current EULA info: ' + json.dumps(disclaimer))
            client.accept_eula(disclaimer)
        except (requests.exceptions.RequestException, ValueError, exceptions.CISetupError) as ex:
            print('⚠️  EULA acceptance may have already been done (%s)' % ex)

        time.sleep(EULA_DELAY)

        print('>>> Disable anonymous access...')
        try:
            client.disable_anonymous()
        except (requests.exceptions.RequestException, exceptions.CISetupError) as ex:
            print('⚠️  Anonymous access configuration may have already been disabled (%s)' % ex)

    def run(self):
        print('=== Nexus Setup Script ===')
        print('Nexus URL: ' + self.url)
        print('')
        self.start()
        self.wait()
        self.retrieve_password()
        self.configure()
        if self.settings_dir:
            path = write_maven_settings(self.settings_dir, ADMIN_USER, self.password)
            print('✓ Maven settings written to ' + path)
        print('✓ Nexus setup complete')
        print('=== Nexus Setup Complete ===')
        print('Admin password: ' + self.password)
