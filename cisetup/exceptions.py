class CISetupError(Exception):
    pass

class NoContainerRuntimeError(CISetupError):
    def __str__(self):
        return 'neither podman nor docker found'

class CertificateGenerationError(CISetupError):
    def __init__(self, path):
        self.path = path

    def __str__(self):
        return 'failed to generate TLS certificate %s' % self.path

class CredentialsGenerationError(CISetupError):
    def __init__(self, what):
        self.what = what

    def __str__(self):
        return 'could not generate or retrieve %s' % self.what

class ServiceNotReadyError(CISetupError):
    def __init__(self, name, timeout):
        self.name = name
        self.timeout = timeout

    def __str__(self):
        return '%s failed to start within %d seconds' % (self.name, self.timeout)

class UnexpectedStatusCodeError(CISetupError):
    def __init__(self, got, expected):
        self._got = got
        self._expected = expected

    def __str__(self):
        return 'expected status code %d, got %s' % (self._expected, self._got)

class UnauthorizedError(CISetupError):
    def __str__(self):
        return 'unauthorized'

class UnexpectedChallengeError(CISetupError):
    def __init__(self, got, expected):
        self._got = got
        self._expected = expected

    def __str__(self):
        return 'expected %s authentication challenge, got %s' % (self._expected, self._got)

class ProxyStartError(CISetupError):
    def __str__(self):
        return 'nginx failed to start'

class LoginError(CISetupError):
    def __init__(self, url):
        self.url = url

    def __str__(self):
        return 'login to %s failed' % self.url

class MissingSettingError(CISetupError):
    def __init__(self, name):
        self.name = name

    def __str__(self):
        return '%s is not set' % self.name

class InvalidSettingError(CISetupError):
    def __init__(self, name, value):
        self.name = name
        self.value = value

    def __str__(self):
        return '%s has invalid value %r' % (self.name, self.value)

class DaemonConfigError(CISetupError):
    def __init__(self, path, reason):
        self.path = path
        self.reason = reason

    def __str__(self):
        return 'cannot update %s: %s' % (self.path, self.reason)

class KeyImportError(CISetupError):
    def __init__(self, reason):
        self.reason = reason

    def __str__(self):
        return 'signing key import failed: %s' % self.reason
