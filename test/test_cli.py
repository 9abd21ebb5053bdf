import shutil
import pytest
import cisetup.main
from cisetup import proxy, registry, nexus

# pylint: disable=no-member

def test_render_proxy_config(capsys):
    assert cisetup.main.doit(['render-proxy-config'], {}) == 0
    out, err = capsys.readouterr()
    assert out == proxy.render_config('registry.strimzi', 443, 5000)
    assert err == ''

def test_render_proxy_config_environ(capsys):
    environ = {'REGISTRY_HOSTNAME': pytest.hostname, 'REGISTRY_PORT': '6000'}
    assert cisetup.main.doit(['render-proxy-config'], environ) == 0
    out, _ = capsys.readouterr()
    assert 'server registry.example:443;' in out
    assert 'proxy_set_header Host $host:6000;' in out

def test_no_operation():
    with pytest.raises(SystemExit):
        cisetup.main.doit([], {})

def test_unknown_operation():
    with pytest.raises(SystemExit):
        cisetup.main.doit(['setup-everything'], {})

def test_no_runtime(monkeypatch, capsys):
    monkeypatch.setattr(shutil, 'which', lambda _: None)
    assert cisetup.main.doit(['setup-registry'], {}) == 1
    assert cisetup.main.doit(['setup-nexus'], {}) == 1
    _, err = capsys.readouterr()
    assert err == '❌ neither podman nor docker found\n' * 2

def test_missing_deploy_setting(capsys):
    assert cisetup.main.doit(['push-to-central'], {'MODULES': 'api', 'SETTINGS_PATH': 's.xml'}) == 1
    _, err = capsys.readouterr()
    assert err == '❌ GPG_SIGNING_KEY is not set\n'

def test_failed_command(shell, monkeypatch, capsys):
    monkeypatch.setattr(shutil, 'which', lambda name: '/usr/bin/' + name)
    shell.reply(['tee'], returncode=1)
    assert cisetup.main.doit(['setup-registry'], {'CISETUP_SUDO': ''}) == 1
    _, err = capsys.readouterr()
    assert "Command '['tee', '-a', '/etc/hosts']' returned non-zero exit status 1." in err

def test_setup_registry_settings(shell, monkeypatch):
    settings = {}
    def run(self):
        settings.update(vars(self))
    monkeypatch.setattr(shutil, 'which', lambda name: '/usr/bin/podman' if name == 'podman' else None)
    monkeypatch.setattr(registry.RegistrySetup, 'run', run)
    environ = {'REGISTRY_HOSTNAME': pytest.hostname,
               'REGISTRY_PORT': '6000',
               'REGISTRY_USERNAME': pytest.username,
               'REGISTRY_PASSWORD': pytest.password,
               'REGISTRY_IMAGE': 'registry:2',
               'REGISTRY_PROXY': '0',
               'CISETUP_SUDO': 'doas',
               'CISETUP_PROGRESS': '1'}
    assert cisetup.main.doit(['setup-registry'], environ) == 0
    assert settings['runtime'].command == 'podman'
    assert settings['url'] == 'registry.example:443'
    assert settings['port'] == 6000
    assert settings['username'] == pytest.username
    assert settings['password'] == pytest.password
    assert settings['image'] == 'registry:2'
    assert not settings['use_proxy']
    assert settings['sudo'] == 'doas'
    assert settings['progress']
    assert settings['environ'] is environ

def test_render_proxy_config_empty_settings(capsys):
    environ = {'REGISTRY_HOSTNAME': '', 'REGISTRY_PORT': ''}
    assert cisetup.main.doit(['render-proxy-config'], environ) == 0
    out, _ = capsys.readouterr()
    assert out == proxy.render_config('registry.strimzi', 443, 5000)

@pytest.mark.parametrize('value', ['abc', '0', '70000'])
def test_invalid_port(value, capsys):
    assert cisetup.main.doit(['render-proxy-config'], {'REGISTRY_PORT': value}) == 1
    out, err = capsys.readouterr()
    assert out == ''
    assert err == '❌ REGISTRY_PORT has invalid value %r\n' % value

def test_port_only_read_when_needed(capsys):
    assert cisetup.main.doit(['push-to-central'], {'REGISTRY_PORT': 'abc'}) == 1
    _, err = capsys.readouterr()
    assert err == '❌ GPG_SIGNING_KEY is not set\n'

def test_setup_registry_empty_settings(shell, monkeypatch):
    settings = {}
    def run(self):
        settings.update(vars(self))
    monkeypatch.setattr(shutil, 'which', lambda name: '/usr/bin/' + name)
    monkeypatch.setattr(registry.RegistrySetup, 'run', run)
    environ = {name: '' for name in ('REGISTRY_HOSTNAME', 'REGISTRY_PORT', 'REGISTRY_USERNAME',
                                     'REGISTRY_PASSWORD', 'REGISTRY_IMAGE', 'REGISTRY_PROXY')}
    assert cisetup.main.doit(['setup-registry'], environ) == 0
    assert settings['runtime'].command == 'docker'
    assert settings['url'] == 'registry.strimzi:5000'
    assert settings['username'] == 'testuser'
    assert settings['password'] == 'testpass'
    assert settings['image'] == 'registry:3'
    assert settings['use_proxy']

@pytest.mark.parametrize('value,enabled', [('1', True), ('true', True), ('yes', True), ('0', False)])
def test_proxy_flag(shell, monkeypatch, value, enabled):
    settings = {}
    def run(self):
        settings.update(vars(self))
    monkeypatch.setattr(shutil, 'which', lambda name: '/usr/bin/' + name)
    monkeypatch.setattr(registry.RegistrySetup, 'run', run)
    assert cisetup.main.doit(['setup-registry'], {'REGISTRY_PROXY': value}) == 0
    assert settings['use_proxy'] == enabled

def test_setup_nexus_empty_settings(shell, monkeypatch):
    settings = {}
    def run(self):
        settings.update(vars(self))
    monkeypatch.setattr(shutil, 'which', lambda name: '/usr/bin/' + name)
    monkeypatch.setattr(nexus.NexusSetup, 'run', run)
    environ = {'NEXUS_URL': '', 'NEXUS_IMAGE': '', 'SETTINGS_DIR': ''}
    assert cisetup.main.doit(['setup-nexus'], environ) == 0
    assert settings['url'] == 'http://localhost:8081'
    assert settings['image'] == 'sonatype/nexus3:3.87.2'
    assert settings['settings_dir'] == 'github-actions/.github/test-settings'
