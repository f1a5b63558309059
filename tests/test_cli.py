"""
Tests for the registry, configuration layering and the NetTweaker/CLI flow.
"""
import pytest
import yaml

import net_tweaker
from net_tweaker import (ConfigurationError, InconsistentMarkerStateError, NetTweaker,
                         NotRootError, Outcome, UnsupportedPlatformError)


@pytest.fixture
def os_release(tmp_path):
    path = tmp_path / 'os-release'
    path.write_text('ID=ubuntu\nVERSION_ID="22.04"\nPRETTY_NAME="Ubuntu 22.04.4 LTS"\n')
    return path


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / 'net-tweaker.yaml'
    path.write_text(yaml.safe_dump({
        'default_answer': 'n',
        'tweaks': {
            'tcp': {
                'target': str(tmp_path / 'sysctl.d' / '99-vpn-optimizer.conf'),
                'backup_dir': str(tmp_path / 'backups'),
            },
            'dns': {
                'primary': '9.9.9.9',
            },
        },
    }))
    return path


@pytest.fixture
def tweaker(config_file, os_release, runner, monkeypatch):
    monkeypatch.setattr(NetTweaker, '_is_root', lambda self: True)
    instance = NetTweaker(no_color=True, config_file=str(config_file),
                          os_release_path=str(os_release))
    instance.runner = runner
    return instance


def tcp_target(tmp_path):
    return tmp_path / 'sysctl.d' / '99-vpn-optimizer.conf'


class TestRegistry:

    def test_tweaks_are_discovered(self, tweaker):
        assert sorted(tweaker.registry.get_available_tweaks()) == ['dns', 'tcp']

    def test_settings_precedence(self, tweaker, monkeypatch):
        assert tweaker.registry.settings_for('dns')['primary'] == '9.9.9.9'

        monkeypatch.setenv('DNS1', '1.0.0.1')
        monkeypatch.setenv('DNS2', '8.8.4.4')
        settings = tweaker.registry.settings_for('dns')
        assert (settings['primary'], settings['secondary']) == ('1.0.0.1', '8.8.4.4')

        settings = tweaker.registry.settings_for('dns', {'primary': '149.112.112.112', 'secondary': None})
        assert (settings['primary'], settings['secondary']) == ('149.112.112.112', '8.8.4.4')

    def test_defaults_fill_unset_keys(self, tweaker):
        settings = tweaker.registry.settings_for('tcp')
        assert settings['sentinel'] == '#PH56'
        assert settings['reload_command'] == ['sysctl', '--system']

    def test_unknown_tweak(self, tweaker):
        with pytest.raises(ConfigurationError):
            tweaker.registry.get('bbr')

    def test_disabled_tweak(self, tweaker):
        tweaker.registry.disable_tweak('dns')
        assert tweaker.registry.get_enabled_tweaks() == ['tcp']
        with pytest.raises(ConfigurationError):
            tweaker.registry.get('dns')

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / 'bad.yaml'
        path.write_text('tweaks: [unclosed\n')
        with pytest.raises(ConfigurationError):
            NetTweaker(config_file=str(path))

    def test_non_mapping_config(self, tmp_path):
        path = tmp_path / 'list.yaml'
        path.write_text('- tcp\n- dns\n')
        with pytest.raises(ConfigurationError):
            NetTweaker(config_file=str(path))

    def test_missing_config_uses_defaults(self, tmp_path):
        instance = NetTweaker(config_file=str(tmp_path / 'absent.yaml'))
        assert instance.registry.settings_for('tcp')['target'] == '/etc/sysctl.d/99-vpn-optimizer.conf'

    def test_yaml_yes_default_answer(self, tmp_path, monkeypatch):
        path = tmp_path / 'cfg.yaml'
        path.write_text('default_answer: yes\n')
        instance = NetTweaker(config_file=str(path))
        monkeypatch.setattr('builtins.input', lambda prompt: '')

        assert instance.registry.config['default_answer'] == 'y'
        assert instance._confirm("Proceed?") is True

    def test_yaml_no_default_answer(self, tmp_path):
        path = tmp_path / 'cfg.yaml'
        path.write_text('default_answer: no\n')
        assert NetTweaker(config_file=str(path)).registry.config['default_answer'] == 'n'

    def test_invalid_default_answer(self, tmp_path):
        path = tmp_path / 'cfg.yaml'
        path.write_text('default_answer: maybe\n')
        with pytest.raises(ConfigurationError):
            NetTweaker(config_file=str(path))

    def test_disabled_tweaks_from_config(self, tmp_path):
        path = tmp_path / 'cfg.yaml'
        path.write_text('disabled_tweaks: [dns]\n')
        instance = NetTweaker(config_file=str(path))
        assert 'dns' in instance.registry.disabled_tweaks


class TestNetTweakerRun:

    def test_install_with_confirmation(self, tweaker, tmp_path, monkeypatch):
        monkeypatch.setattr('builtins.input', lambda prompt: 'y')

        result = tweaker.run('tcp', 'install')

        assert result.outcome is Outcome.INSTALLED
        assert '#PH56' in tcp_target(tmp_path).read_text().splitlines()
        assert tweaker.runner.commands() == ['sysctl --system']

    def test_default_answer_cancels(self, tweaker, tmp_path, monkeypatch, capsys):
        monkeypatch.setattr('builtins.input', lambda prompt: '')

        result = tweaker.run('tcp', 'install')

        assert result.outcome is Outcome.CANCELLED
        assert not tcp_target(tmp_path).exists()
        assert 'canceled by the user' in capsys.readouterr().out

    def test_present_tweak_offers_removal(self, tweaker, tmp_path, monkeypatch):
        monkeypatch.setattr('builtins.input', lambda prompt: 'y')
        tweaker.run('tcp', 'install')
        prompts = []

        def answer(prompt):
            prompts.append(prompt)
            return 'y'

        monkeypatch.setattr('builtins.input', answer)
        result = tweaker.run('tcp', 'install')

        assert result.outcome is Outcome.UNINSTALLED
        assert prompts[0].startswith('Do you want to remove TCP Tweaker settings?')
        assert '#PH56' not in tcp_target(tmp_path).read_text()

    def test_present_tweak_with_yes_is_noop(self, tweaker, tmp_path):
        tweaker.assume_yes = True
        tweaker.run('tcp', 'install')
        content = tcp_target(tmp_path).read_text()

        result = tweaker.run('tcp', 'install')

        assert result.outcome is Outcome.ALREADY_INSTALLED
        assert tcp_target(tmp_path).read_text() == content

    def test_remove_action(self, tweaker, tmp_path):
        tweaker.assume_yes = True
        tweaker.run('tcp', 'install')

        result = tweaker.run('tcp', 'uninstall')

        assert result.outcome is Outcome.UNINSTALLED
        assert tcp_target(tmp_path).read_text() == ''

    def test_inconsistent_state_aborts(self, tweaker, tmp_path):
        tweaker.assume_yes = True
        target = tcp_target(tmp_path)
        target.parent.mkdir(parents=True)
        target.write_text('#PH56\n#PH56\n')

        with pytest.raises(InconsistentMarkerStateError) as excinfo:
            tweaker.run('tcp', 'install')

        assert excinfo.value.count == 2

        assert target.read_text() == '#PH56\n#PH56\n'
        assert tweaker.runner.calls == []

    def test_root_required(self, tweaker, monkeypatch):
        monkeypatch.setattr(NetTweaker, '_is_root', lambda self: False)
        with pytest.raises(NotRootError):
            tweaker.run('tcp', 'install')

    def test_status_does_not_need_root(self, tweaker, monkeypatch, capsys):
        monkeypatch.setattr(NetTweaker, '_is_root', lambda self: False)

        assert tweaker.run('tcp', 'status') is None
        assert 'Marker #PH56: absent' in capsys.readouterr().out

    def test_dns_platform_check(self, tweaker, os_release):
        os_release.write_text('ID=debian\nVERSION_ID="12"\nPRETTY_NAME="Debian GNU/Linux 12"\n')
        tweaker.assume_yes = True

        with pytest.raises(UnsupportedPlatformError) as excinfo:
            tweaker.run('dns', 'install')

        assert 'Debian GNU/Linux 12' in str(excinfo.value)
        assert tweaker.runner.calls == []

    def test_missing_os_release(self, tweaker, tmp_path):
        tweaker.os_release_path = str(tmp_path / 'missing')
        with pytest.raises(UnsupportedPlatformError):
            tweaker.run('dns', 'install')

    def test_tcp_has_no_platform_restriction(self, tweaker, os_release):
        os_release.write_text('ID=fedora\nVERSION_ID="40"\n')
        tweaker.assume_yes = True

        assert tweaker.run('tcp', 'install').outcome is Outcome.INSTALLED

    def test_list_tweaks(self, tweaker, capsys):
        tweaker.list_tweaks()
        out = capsys.readouterr().out
        assert 'Total: 2 tweaks' in out
        assert 'tcp' in out and 'dns' in out


class TestMain:

    def test_not_root_exits_non_zero(self, config_file, monkeypatch):
        monkeypatch.setattr(net_tweaker.os, 'geteuid', lambda: 1000)

        with pytest.raises(SystemExit) as excinfo:
            net_tweaker.main(['tcp', '--yes', '--no-color', '--config', str(config_file)])

        assert excinfo.value.code == 1

    def test_install_and_remove(self, config_file, tmp_path, monkeypatch):
        calls = []

        def fake_run(self, cmd, timeout=30, check=False, env=None):
            calls.append(list(cmd))
            return 0, '', ''

        monkeypatch.setattr(net_tweaker.os, 'geteuid', lambda: 0)
        monkeypatch.setattr(net_tweaker.CommandRunner, 'run', fake_run)

        net_tweaker.main(['tcp', '--yes', '--no-color', '--config', str(config_file)])
        assert '#PH56' in tcp_target(tmp_path).read_text()

        net_tweaker.main(['tcp', '--remove', '--yes', '--no-color', '--config', str(config_file)])
        assert '#PH56' not in tcp_target(tmp_path).read_text()
        assert calls == [['sysctl', '--system'], ['sysctl', '--system']]

    def test_cancellation_exits_zero(self, config_file, tmp_path, monkeypatch):
        monkeypatch.setattr(net_tweaker.os, 'geteuid', lambda: 0)
        monkeypatch.setattr('builtins.input', lambda prompt: 'n')

        assert net_tweaker.main(['tcp', '--no-color', '--config', str(config_file)]) is None
        assert not tcp_target(tmp_path).exists()

    def test_invalid_dns_override_exits_non_zero(self, config_file, monkeypatch):
        monkeypatch.setattr(net_tweaker.os, 'geteuid', lambda: 0)

        with pytest.raises(SystemExit) as excinfo:
            net_tweaker.main(['dns', '--status', '--primary', 'not-an-ip', '--config', str(config_file)])

        assert excinfo.value.code == 1

    def test_undecodable_target_exits_non_zero(self, config_file, tmp_path, monkeypatch, capsys):
        target = tcp_target(tmp_path)
        target.parent.mkdir(parents=True)
        target.write_bytes(b'# caf\xe9\n')
        monkeypatch.setattr(net_tweaker.os, 'geteuid', lambda: 0)

        with pytest.raises(SystemExit) as excinfo:
            net_tweaker.main(['tcp', '--yes', '--no-color', '--config', str(config_file)])

        assert excinfo.value.code == 1
        assert 'Error:' in capsys.readouterr().err
        assert target.read_bytes() == b'# caf\xe9\n'

    def test_tweak_name_required(self):
        with pytest.raises(SystemExit) as excinfo:
            net_tweaker.main([])
        assert excinfo.value.code == 2

    def test_list_tweaks(self, capsys):
        net_tweaker.main(['--list-tweaks', '--no-color'])
        assert 'Available Tweaks' in capsys.readouterr().out
