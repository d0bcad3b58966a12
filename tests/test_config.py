"""Tests for Supfile loading."""

from pathlib import Path

import pytest

from stackup.config import Network, Upload, find_supfile, load_supfile

SUPFILE = """\
version: "0.5"

env:
  NAME: api
  IMAGE: example/api

networks:
  production:
    hosts:
      - deploy@api1.example.com
      - api2.example.com:2222
    env:
      IMAGE: example/api:prod
  staging:
    inventory: printf 'stage1\\n# comment\\n\\nstage2\\n'

commands:
  ping:
    desc: Print uname and current date/time
    run: uname -a; date
  upload:
    upload:
      - src: ./dist
        dst: /srv/$NAME
        exclude: "*.pyc, .git"
  config:
    template:
      src: nginx.conf.j2
      dst: /etc/nginx/nginx.conf
      vars: vars.yml
    serial: 2
  migrate:
    run: ./manage.py migrate
    once: true
  shell:
    run: bash
    stdin: true

targets:
  deploy:
    - upload
    - config
    - migrate

defaults:
  user: ops
  stop_on_error: false
  timeout: 10
"""


@pytest.fixture
def supfile_path(tmp_path: Path) -> Path:
    path = tmp_path / "Supfile"
    path.write_text(SUPFILE)
    return path


def write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "Supfile"
    path.write_text(text)
    return path


class TestLoadSupfile:
    def test_loads_everything(self, supfile_path):
        supfile = load_supfile(supfile_path)

        assert supfile.version == "0.5"
        assert supfile.env == {"NAME": "api", "IMAGE": "example/api"}
        assert list(supfile.networks) == ["production", "staging"]
        assert supfile.networks["production"].hosts == ["deploy@api1.example.com", "api2.example.com:2222"]
        assert supfile.networks["production"].env == {"IMAGE": "example/api:prod"}
        assert supfile.defaults.user == "ops"
        assert supfile.defaults.stop_on_error is False
        assert supfile.defaults.timeout == 10
        assert supfile.source_path == supfile_path.resolve()

    def test_command_fields(self, supfile_path):
        commands = load_supfile(supfile_path).commands

        assert commands["ping"].desc == "Print uname and current date/time"
        assert commands["ping"].run == "uname -a; date"
        assert commands["upload"].upload == (Upload(src="./dist", dst="/srv/$NAME", exclude=("*.pyc", ".git")),)
        assert commands["config"].template.vars == "vars.yml"
        assert commands["config"].serial == 2
        assert commands["migrate"].once is True
        assert commands["shell"].stdin is True

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_supfile(tmp_path / "Supfile")

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(ValueError, match="invalid YAML"):
            load_supfile(write(tmp_path, "networks: [\n"))

    def test_top_level_must_be_mapping(self, tmp_path):
        with pytest.raises(ValueError, match="mapping"):
            load_supfile(write(tmp_path, "- a\n- b\n"))

    def test_requires_networks(self, tmp_path):
        with pytest.raises(ValueError, match="No networks"):
            load_supfile(write(tmp_path, "commands:\n  ping:\n    run: date\n"))

    def test_requires_commands(self, tmp_path):
        with pytest.raises(ValueError, match="No commands"):
            load_supfile(write(tmp_path, "networks:\n  dev:\n    hosts: [localhost]\n"))

    def test_network_without_hosts(self, tmp_path):
        text = "networks:\n  dev: {}\ncommands:\n  ping:\n    run: date\n"
        with pytest.raises(ValueError, match="'dev'"):
            load_supfile(write(tmp_path, text))

    def test_command_with_nothing_to_do(self, tmp_path):
        text = "networks:\n  dev:\n    hosts: [a]\ncommands:\n  idle:\n    desc: nothing\n"
        with pytest.raises(ValueError, match="nothing to do"):
            load_supfile(write(tmp_path, text))

    @pytest.mark.parametrize("serial", ["-1", "two", "true"])
    def test_invalid_serial(self, tmp_path, serial):
        text = f"networks:\n  dev:\n    hosts: [a]\ncommands:\n  ping:\n    run: date\n    serial: {serial}\n"
        with pytest.raises(ValueError, match="serial"):
            load_supfile(write(tmp_path, text))

    def test_template_needs_dst(self, tmp_path):
        text = "networks:\n  dev:\n    hosts: [a]\ncommands:\n  cfg:\n    template:\n      src: a.j2\n"
        with pytest.raises(ValueError, match="template needs src and dst"):
            load_supfile(write(tmp_path, text))

    def test_target_cannot_shadow_command(self, tmp_path):
        text = (
            "networks:\n  dev:\n    hosts: [a]\n"
            "commands:\n  ping:\n    run: date\n"
            "targets:\n  ping: [ping]\n"
        )
        with pytest.raises(ValueError, match="shadows"):
            load_supfile(write(tmp_path, text))


class TestResolveCommands:
    def test_targets_expand_in_order(self, supfile_path):
        supfile = load_supfile(supfile_path)

        commands = supfile.resolve_commands(["ping", "deploy", "ping"])

        assert [c.name for c in commands] == ["ping", "upload", "config", "migrate", "ping"]

    def test_unknown_command(self, supfile_path):
        with pytest.raises(ValueError, match="Unknown command or target 'nope'"):
            load_supfile(supfile_path).resolve_commands(["nope"])

    def test_target_with_unknown_member(self, tmp_path):
        text = (
            "networks:\n  dev:\n    hosts: [a]\n"
            "commands:\n  ping:\n    run: date\n"
            "targets:\n  all: [ping, pong]\n"
        )
        supfile = load_supfile(write(tmp_path, text))

        with pytest.raises(ValueError, match="unknown command 'pong'"):
            supfile.resolve_commands(["all"])


class TestInventory:
    def test_inventory_hosts_follow_static_hosts(self):
        network = Network(name="dev", hosts=["a"], inventory="echo b; echo '  c  '; echo '#d'")
        assert network.resolve_hosts() == ["a", "b", "c"]

    def test_inventory_from_supfile(self, supfile_path):
        network = load_supfile(supfile_path).networks["staging"]
        assert network.resolve_hosts() == ["stage1", "stage2"]

    def test_failing_inventory(self):
        network = Network(name="dev", inventory="echo boom >&2; exit 3")
        with pytest.raises(RuntimeError, match="boom"):
            network.resolve_hosts()


class TestFindSupfile:
    def test_prefers_supfile(self, tmp_path):
        (tmp_path / "Supfile").write_text("")
        (tmp_path / "Supfile.yml").write_text("")
        assert find_supfile(tmp_path) == tmp_path / "Supfile"

    def test_falls_back_to_yml(self, tmp_path):
        (tmp_path / "Supfile.yml").write_text("")
        assert find_supfile(tmp_path) == tmp_path / "Supfile.yml"

    def test_default_when_missing(self, tmp_path):
        assert find_supfile(tmp_path) == tmp_path / "Supfile"
