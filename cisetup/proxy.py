"""
nginx reverse proxy which accepts HTTP and HTTPS on the same port.

``docker manifest create`` talks HTTPS to a registry but ``docker manifest push``
talks plain HTTP to the same endpoint. The stream block peeks at the first bytes
of each connection (``ssl_preread``) and hands TLS handshakes to a TLS-terminating
server and everything else to a plain one. Both forward to the registry over TLS.
"""

from typing import Optional, Tuple
import os
import shutil
import tempfile
import time

import requests

from cisetup import exceptions, ServiceClient, status_text

PROXY_CONTAINER = 'test-nginx'
PROXY_IMAGE = 'nginx:alpine'

# Ports inside the proxy container
LISTEN_PORT = 5000
TLS_PORT = 5001
PLAIN_PORT = 5002

STARTUP_DELAY = 3

NGINX_TEMPLATE = '''\
# Protocol detection: route HTTP and HTTPS to different backends
stream {
    upstream https_backend {
        server 127.0.0.1:%(tls_port)d;
    }

    upstream http_backend {
        server 127.0.0.1:%(plain_port)d;
    }

    map $ssl_preread_protocol $upstream {
        default https_backend;
        "" http_backend;
    }

    server {
        listen %(listen_port)d;
        proxy_pass $upstream;
        ssl_preread on;
    }
}

events {
    worker_connections 1024;
}

http {
    upstream registry {
        server REGISTRY_HOSTNAME:REGISTRY_INTERNAL_PORT;
    }

    # HTTPS server (receives TLS connections)
    server {
        listen %(tls_port)d ssl;
        server_name REGISTRY_HOSTNAME;

        ssl_certificate /etc/nginx/domain.crt;
        ssl_certificate_key /etc/nginx/domain.key;

        client_max_body_size 0;
        chunked_transfer_encoding on;

        location /v2/ {
            proxy_pass https://registry;
            proxy_ssl_verify off;
            proxy_set_header Host $host:REGISTRY_PORT;
            proxy_set_header X-Real-IP $remote_addr;
            proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
            proxy_set_header X-Forwarded-Proto https;
            proxy_read_timeout 900;
            proxy_buffering off;
        }
    }

    # HTTP server (receives plain HTTP connections)
    server {
        listen %(plain_port)d;
        server_name REGISTRY_HOSTNAME;

        client_max_body_size 0;
        chunked_transfer_encoding on;

        location /v2/ {
            proxy_pass https://registry;
            proxy_ssl_verify off;
            proxy_set_header Host $host:REGISTRY_PORT;
            proxy_set_header X-Real-IP $remote_addr;
            proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
            proxy_set_header X-Forwarded-Proto http;
            proxy_read_timeout 900;
            proxy_buffering off;
        }
    }
}
''' % {'listen_port': LISTEN_PORT, 'tls_port': TLS_PORT, 'plain_port': PLAIN_PORT}

def render_config(hostname: str, internal_port: int, port: int) -> str:
    """
    Fill in the nginx configuration template.

    :param hostname: Registry host name. The proxy reaches the registry by this name.

    :param internal_port: Port the registry listens on (HTTPS).

    :param port: Port clients use to reach the proxy. Sent upstream in the ``Host`` header.

    :returns: nginx.conf contents.
    """
    conf = NGINX_TEMPLATE
    conf = conf.replace('REGISTRY_HOSTNAME', hostname)
    conf = conf.replace('REGISTRY_INTERNAL_PORT', str(internal_port))
    conf = conf.replace('REGISTRY_PORT', str(port))
    return conf

class ProxySetup(object):
    # pylint: disable=too-many-instance-attributes
    """
    Starts nginx in front of the registry and checks both protocols get through.
    """
    def __init__(self, runtime, hostname: str, port: int, internal_port: int,
                 cert: str, key: str, username: str, password: str):
        # pylint: disable=too-many-arguments
        self.runtime = runtime
        self.hostname = hostname
        self.port = port
        self.internal_port = internal_port
        self.cert = cert
        self.key = key
        self.username = username
        self.password = password
        self.url = '%s:%d' % (hostname, port)
        self.conf_dir: Optional[str] = None

    def write_config(self) -> str:
        self.conf_dir = tempfile.mkdtemp()
        shutil.copy(self.cert, os.path.join(self.conf_dir, 'domain.crt'))
        shutil.copy(self.key, os.path.join(self.conf_dir, 'domain.key'))
        conf = render_config(self.hostname, self.internal_port, self.port)
        path = os.path.join(self.conf_dir, 'nginx.conf')
        with open(path, 'w', encoding='utf8') as f:
            f.write(conf)
        print('Nginx config:')
        print(conf)
        return path

    def start(self):
        print('>>> Setting up nginx with protocol detection...')
        path = self.write_config()

        if self.runtime.exists(PROXY_CONTAINER):
            print('>>> Stopping existing nginx container...')
            self.runtime.remove(PROXY_CONTAINER)

        print('>>> Starting nginx with HTTP/HTTPS protocol detection on port %d...' % self.port)
        self.runtime.run(PROXY_IMAGE,
                         name=PROXY_CONTAINER,
                         extra=['--add-host', self.hostname + ':host-gateway'],
                         ports=['%d:%d' % (self.port, LISTEN_PORT)],
                         volumes=[path + ':/etc/nginx/nginx.conf:ro',
                                  os.path.join(self.conf_dir, 'domain.crt') + ':/etc/nginx/domain.crt:ro',
                                  os.path.join(self.conf_dir, 'domain.key') + ':/etc/nginx/domain.key:ro'])

        print('>>> Waiting for nginx to be ready...')
        time.sleep(STARTUP_DELAY)

        if not self.runtime.exists(PROXY_CONTAINER, running_only=True):
            self.runtime.logs(PROXY_CONTAINER)
            raise exceptions.ProxyStartError()

    def verify(self) -> Tuple[Optional[int], Optional[int]]:
        """
        Request ``/v2/`` through the proxy over plain HTTP and over HTTPS.
        A failure is reported but not fatal; the login check that follows decides.

        :returns: Status codes of the HTTP and HTTPS requests (``None`` if no response).
        """
        auth = (self.username, self.password)

        print('>>> Testing HTTP through nginx proxy...')
        http_code = ServiceClient(self.url, auth, insecure=True, timeout=10).probe('v2/')
        print('HTTP test: ' + status_text(http_code))

        print('>>> Testing HTTPS through nginx proxy...')
        https_code = ServiceClient(self.url, auth, tlsverify=self.cert, timeout=10).probe('v2/')
        print('HTTPS test: ' + status_text(https_code))

        # pylint: disable=no-member
        ok = [code == requests.codes.ok for code in (http_code, https_code)]
        if all(ok):
            print('✓ Nginx proxy accepting both HTTP and HTTPS')
        elif any(ok):
            print('⚠ Nginx partially working (HTTP: %s, HTTPS: %s)' % (status_text(http_code), status_text(https_code)))
        else:
            print('⚠ Nginx proxy tests failed (HTTP: %s, HTTPS: %s)' % (status_text(http_code), status_text(https_code)))
            self.runtime.logs(PROXY_CONTAINER)
        return http_code, https_code
