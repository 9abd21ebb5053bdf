import os
import subprocess
import shutil
import time
import base64
from functools import wraps
import pytest
import responses
import yaml
from responses import _recorder
import cisetup

# From https://pytest.org/latest/example/simple.html#making-test-result-information-available-in-fixtures
# pylint: disable=no-member,unused-argument
@pytest.hookimpl(tryfirst=True, hookwrapper=True)
def pytest_runtest_makereport(item, call):
    # execute all other hooks to obtain the report object
    outcome = yield
    rep = outcome.get_result()
    if rep.failed:
        setattr(item.getparent(pytest.Module), 'rep_failed', True)

_here = os.path.join(os.path.dirname(__file__))
_responses_dir = os.path.join(_here, 'responses')
_username = 'fred'
_password = '!WordPass0$'

def pytest_configure(config):
    setattr(pytest, 'username', _username)
    setattr(pytest, 'password', _password)
    setattr(pytest, 'authorization', 'Basic ' + base64.b64encode((_username + ':' + _password).encode('utf-8')).decode('utf-8'))
    setattr(pytest, 'hostname', 'registry.example')
    setattr(pytest, 'nexus_url', 'http://localhost:8081')
    config.addinivalue_line('markers', 'record: test records HTTP responses')

class FakeShell(object):
    """
    Stands in for the subprocess functions used by cisetup. Commands are
    recorded; replies are looked up by the longest matching command prefix.
    """
    def __init__(self):
        self.calls = []
        self._replies = {}

    def reply(self, prefix, stdout=b'', returncode=0, action=None):
        self._replies[tuple(prefix)] = (stdout, returncode, action)

    def _lookup(self, cmd, kwargs):
        self.calls.append((list(cmd), kwargs))
        best = None
        for prefix, r in self._replies.items():
            if tuple(cmd[:len(prefix)]) == prefix and (best is None or len(prefix) > len(best[0])):
                best = (prefix, r)
        stdout, returncode, action = best[1] if best else (b'', 0, None)
        if action:
            action(list(cmd))
        return stdout, returncode

    def commands(self, *prefix):
        return [cmd for cmd, _ in self.calls if tuple(cmd[:len(prefix)]) == prefix]

    def check_output(self, cmd, **kwargs):
        stdout, returncode = self._lookup(cmd, kwargs)
        if returncode:
            raise subprocess.CalledProcessError(returncode, cmd, stdout)
        return stdout

    def check_call(self, cmd, **kwargs):
        _, returncode = self._lookup(cmd, kwargs)
        if returncode:
            raise subprocess.CalledProcessError(returncode, cmd)
        return 0

    def call(self, cmd, **kwargs):
        return self._lookup(cmd, kwargs)[1]

    def run(self, cmd, **kwargs):
        stdout, returncode = self._lookup(cmd, kwargs)
        if returncode and kwargs.get('check'):
            raise subprocess.CalledProcessError(returncode, cmd, stdout)
        return subprocess.CompletedProcess(cmd, returncode, stdout=stdout, stderr=b'')

@pytest.fixture
def shell(monkeypatch):
    s = FakeShell()
    for name in ('check_output', 'check_call', 'call', 'run'):
        monkeypatch.setattr(subprocess, name, getattr(s, name))
    return s

@pytest.fixture
def no_sleep(monkeypatch):
    sleeps = []
    monkeypatch.setattr(time, 'sleep', sleeps.append)
    return sleeps

@pytest.fixture
def github_env(tmp_path):
    path = tmp_path / 'github_env'
    path.write_text('')
    return str(path)

@pytest.fixture
def git_repo(tmp_path):
    if not shutil.which('git'):
        pytest.skip('git not installed')
    def git(*args):
        subprocess.check_call(['git',
                               '-c', 'user.name=Fred',
                               '-c', 'user.email=fred@example.com',
                               '-c', 'init.defaultBranch=main'] + list(args),
                              cwd=str(tmp_path), stdout=subprocess.DEVNULL)
    git('init')
    (tmp_path / 'README').write_text('hello\n')
    (tmp_path / '.github').mkdir()
    (tmp_path / '.github' / 'action.yml').write_text('name: test\n')
    git('add', '.')
    git('commit', '-m', 'initial')
    return tmp_path

def _remove_container(name):
    subprocess.call(['docker', 'stop', name], stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    subprocess.call(['docker', 'rm', name], stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)

@pytest.fixture(scope='module')
def docker_registry(request):
    if os.environ.get('CISETUP_INTEGRATION') != '1' or not shutil.which('docker'):
        pytest.skip('set CISETUP_INTEGRATION=1 to run against docker')
    from cisetup import registry
    setattr(request.node, 'rep_failed', False)
    def cleanup():
        if getattr(request.node, 'rep_failed', False):
            subprocess.call(['docker', 'logs', registry.REGISTRY_CONTAINER])
        _remove_container(registry.REGISTRY_CONTAINER)
    request.addfinalizer(cleanup)
    cleanup()
    setup = registry.RegistrySetup(cisetup.ContainerRuntime('docker'),
                                   hostname='localhost',
                                   username=pytest.username,
                                   password=pytest.password,
                                   use_proxy=False,
                                   environ={})
    setup.make_dirs()
    setup.generate_certificate()
    setup.generate_htpasswd()
    setup.start_registry()
    setup.wait_for_registry()
    return setup

def record_or_replay(f):
    path = os.path.join(_responses_dir, f.__name__ + '.yaml')
    @wraps(f)
    def wrapper(*args, **kwargs):
        with open(path, 'r', encoding='utf8') as file:
            data = yaml.load(file, Loader=yaml.Loader)
        for rsp in data["responses"]:
            rsp = rsp["response"]
            rsp["headers"].pop("content-type", None)
            responses.add(
                method=rsp["method"],
                url=rsp["url"],
                body=rsp["body"],
                status=rsp["status"],
                content_type=rsp["content_type"],
                auto_calculate_content_length=rsp["auto_calculate_content_length"],
                headers=rsp["headers"]
            )
        return f(*args, **kwargs)
    if os.environ.get('CISETUP_RECORD') == '1':
        return pytest.mark.record(_recorder.record(file_path=path)(f))
    return responses.activate(wrapper)
