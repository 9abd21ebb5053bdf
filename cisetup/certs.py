"""
Self-signed certificate generation and trust installation
"""

from typing import Callable, Iterable, Optional, Tuple
import os
import subprocess

from cisetup import exceptions, privileged, copy_privileged, mkdir_privileged, DEVNULL

DOCKER_CERTS_DIR = '/etc/docker/certs.d'

# CA directory and the command which rebuilds the bundle from it
TRUST_STORES = [
    # Debian/Ubuntu
    ('/usr/local/share/ca-certificates', ['update-ca-certificates']),
    # RHEL/CentOS/Fedora
    ('/etc/pki/ca-trust/source/anchors', ['update-ca-trust'])
]

def generate_certificate(certs_dir: str, hostname: str, days: int=365, bits: int=4096) -> Tuple[str, str]:
    """
    Generate a self-signed certificate valid for ``hostname`` and ``127.0.0.1``.

    :param certs_dir: Directory to write ``domain.crt`` and ``domain.key`` into.

    :param hostname: Common name and DNS subject alternative name.

    :param days: Validity period.

    :param bits: RSA key size.

    :returns: Paths of the certificate and the key.
    """
    crt = os.path.join(certs_dir, 'domain.crt')
    key = os.path.join(certs_dir, 'domain.key')
    subprocess.call(['openssl', 'req',
                     '-newkey', 'rsa:%d' % bits,
                     '-nodes', '-sha256',
                     '-keyout', key,
                     '-x509', '-days', str(days),
                     '-out', crt,
                     '-subj', '/CN=' + hostname,
                     '-addext', 'subjectAltName=DNS:%s,IP:127.0.0.1' % hostname],
                    stdout=DEVNULL, stderr=DEVNULL)
    if not os.path.isfile(crt) or os.path.getsize(crt) == 0:
        raise exceptions.CertificateGenerationError(crt)
    return crt, key

def install_trust(cert: str, hostname: str, sudo: Optional[str],
                  isdir: Callable[[str], bool]=os.path.isdir) -> bool:
    """
    Add a certificate to the system trust store.

    :returns: ``False`` if no known trust store was found.
    """
    for directory, update in TRUST_STORES:
        if isdir(directory):
            copy_privileged(sudo, cert, os.path.join(directory, hostname + '.crt'))
            subprocess.check_call(privileged(sudo, update))
            return True
    print('⚠ Could not find system CA directory, skipping system trust')
    return False

def install_docker_trust(cert: str, registry_urls: Iterable[str], sudo: Optional[str],
                         certs_root: str=DOCKER_CERTS_DIR):
    for url in registry_urls:
        directory = os.path.join(certs_root, url)
        mkdir_privileged(sudo, directory)
        copy_privileged(sudo, cert, os.path.join(directory, 'ca.crt'))
