import dataclasses
import os
import pathlib
import shutil
import sys
import time

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import devenv_sequencer
import devenv_setup
from conftest import FakeRunner
from devenv_sequencer import ExecutionContext, FailurePolicy, RunStatus, Sequencer, StepOutcome

CATALOG = devenv_setup.build_catalog()
FAST_DOCKER = devenv_setup.DockerSettings(startup_timeout=5, poll_interval=0)
COMPOSE_RUNNING = {
    ("docker-compose", "ps", "-q"): (0, "abc\n", ""),
    ("docker", "inspect"): (0, "true\n", ""),
}


def make_ctx(tmp_path, runner=None, platform="linux", confirm=None, answers=(), config=None, **values):
    home = tmp_path / "home"
    cwd = tmp_path / "work"
    home.mkdir(exist_ok=True)
    cwd.mkdir(exist_ok=True)
    replies = iter(answers)
    values.setdefault("shell", "/bin/bash")
    return ExecutionContext(
        devenv_setup.PLATFORMS[platform],
        runner=runner or FakeRunner(),
        confirm=confirm or (lambda question: False),
        prompt=lambda question: next(replies),
        config=config or devenv_setup.SetupConfig(),
        cwd=cwd,
        home=home,
        values=values,
    )


def step(name):
    return CATALOG.get(name)


def test_catalog_order_and_policies():
    assert CATALOG.names == (
        "source-dir",
        "payara-dir",
        "dependencies",
        "docker",
        "java",
        "java-switcher",
        "maven",
        "patch",
        "oracle",
        "copy-files",
        "payara",
        "cleanup",
    )
    aborting = {s.name for s in CATALOG.steps if s.on_failure is FailurePolicy.ABORT}
    assert aborting == {"source-dir", "payara-dir", "dependencies", "java"}
    assert step("payara").depends_on == ("java", "copy-files")


def test_resolve_payara_pulls_in_prerequisites():
    plan = [s.name for s in CATALOG.resolve(["payara"])]
    assert plan == ["source-dir", "payara-dir", "dependencies", "java", "copy-files", "payara"]


def test_auto_detect_finds_source_and_payara(tmp_path):
    paths = devenv_setup.PathSettings(payara_candidates=("~/payara5", "~/work/payara5"))
    ctx = make_ctx(tmp_path, config=devenv_setup.SetupConfig(paths=paths))
    source = ctx.cwd / "rakuten-card-app-server" / "card-ria"
    source.mkdir(parents=True)
    payara = ctx.home / "work" / "payara5"
    payara.mkdir(parents=True)
    ctx.cwd = source

    devenv_setup.auto_detect_config(ctx)

    assert ctx.get("source_dir") == source.parent
    assert ctx.get("payara_dir") == payara


def test_source_dir_prompt_accepts_relative_path(tmp_path):
    ctx = make_ctx(tmp_path, answers=["checkout/"])
    (ctx.cwd / "checkout").mkdir()

    assert step("source-dir").is_satisfied(ctx) is False
    step("source-dir").apply(ctx)

    assert ctx.get("source_dir") == ctx.cwd / "checkout"
    assert step("source-dir").is_satisfied(ctx) is True


def test_source_dir_declined_reprompt_aborts_run(tmp_path):
    ctx = make_ctx(tmp_path, answers=["does-not-exist"])

    report = CATALOG.run(ctx, ["source-dir"])

    assert report.status is RunStatus.ABORTED
    assert report.outcome_of("source-dir") is StepOutcome.FAILED


def test_normalize_directory_handles_drive_paths(tmp_path):
    assert devenv_setup.normalize_directory("  ", tmp_path) is None
    assert devenv_setup.normalize_directory("sub", tmp_path) == tmp_path / "sub"
    assert devenv_setup.normalize_directory("C:/Users/dev", tmp_path) == pathlib.Path("C:/Users/dev")


def test_dependencies_installed_with_dnf(tmp_path):
    runner = FakeRunner(tools={"curl", "tar", "dnf"})
    ctx = make_ctx(tmp_path, runner)

    assert step("dependencies").is_satisfied(ctx) is False
    step("dependencies").apply(ctx)

    install = next(call for call in runner.calls if "/usr/bin/dnf" in call)
    assert install[-4:] == ["-y", "install", "unzip", "zip"]


def test_dependencies_fall_back_to_apt(tmp_path):
    runner = FakeRunner(tools={"curl", "zip", "unzip", "apt-get"})
    ctx = make_ctx(tmp_path, runner)

    step("dependencies").apply(ctx)

    assert any("/usr/bin/apt-get" in call and "tar" in call for call in runner.calls)


def test_dependencies_unsupported_tool_needs_confirmation(tmp_path):
    runner = FakeRunner(tools={"zip", "unzip", "tar", "winget"})
    questions = []

    def decline(question):
        questions.append(question)
        return False

    ctx = make_ctx(tmp_path, runner, platform="windows", confirm=decline)

    with pytest.raises(devenv_sequencer.PrerequisiteMissing):
        step("dependencies").apply(ctx)
    assert questions == ["Continue without curl?"]


def test_dependencies_satisfied_when_all_present(tmp_path):
    ctx = make_ctx(tmp_path, FakeRunner(tools={"curl", "zip", "unzip", "tar"}))
    assert step("dependencies").is_satisfied(ctx) is True


def test_docker_satisfied_when_daemon_answers(tmp_path):
    runner = FakeRunner(responses={("docker", "info"): (0, "ok", "")})
    ctx = make_ctx(tmp_path, runner)
    assert step("docker").is_satisfied(ctx) is True
    assert runner.timeouts == [devenv_setup.DockerSettings().check_timeout]


def test_docker_linux_starts_service_and_waits(tmp_path):
    state = {"checks": 0}

    def docker_info(cmd):
        state["checks"] += 1
        return (0, "", "") if state["checks"] >= 3 else (1, "", "Cannot connect")

    runner = FakeRunner(tools={"docker"}, responses={("docker", "info"): docker_info})
    ctx = make_ctx(tmp_path, runner, config=devenv_setup.SetupConfig(docker=FAST_DOCKER))

    step("docker").apply(ctx)

    assert any(call[-3:] == ["systemctl", "start", "docker"] for call in runner.calls)
    assert state["checks"] == 3
    info_timeouts = [t for call, t in zip(runner.calls, runner.timeouts) if call[:2] == ["docker", "info"]]
    assert len(info_timeouts) == 3
    assert all(0 < t <= FAST_DOCKER.startup_timeout for t in info_timeouts)


def test_docker_missing_on_linux_is_reported(tmp_path):
    ctx = make_ctx(tmp_path, FakeRunner(responses={("docker", "info"): (127, "", "")}))

    with pytest.raises(devenv_sequencer.PrerequisiteMissing):
        step("docker").apply(ctx)


def test_docker_desktop_start_times_out(tmp_path, monkeypatch):
    desktop = tmp_path / "Docker Desktop.exe"
    desktop.write_text("", encoding="utf-8")
    profile = devenv_setup.PLATFORMS["windows"]
    monkeypatch.setitem(
        devenv_setup.PLATFORMS,
        "windows",
        devenv_sequencer.PlatformProfile(
            name="windows",
            package_managers=profile.package_managers,
            docker_strategy="desktop",
            docker_desktop=desktop,
        ),
    )
    runner = FakeRunner(tools={"docker"}, responses={("docker", "info"): (1, "", "not running")})
    settings = devenv_setup.DockerSettings(startup_timeout=0, poll_interval=0)
    ctx = make_ctx(tmp_path, runner, platform="windows", config=devenv_setup.SetupConfig(docker=settings))

    with pytest.raises(devenv_sequencer.TimeoutExceeded):
        step("docker").apply(ctx)
    assert runner.spawned == [[str(desktop)]]


def _sdkman(ctx):
    init = ctx.home / ".sdkman" / "bin" / "sdkman-init.sh"
    init.parent.mkdir(parents=True)
    init.write_text("", encoding="utf-8")
    return init


def test_java_installs_both_candidates(tmp_path):
    runner = FakeRunner()
    ctx = make_ctx(tmp_path, runner)
    _sdkman(ctx)

    produced = step("java").apply(ctx)

    scripts = [call[2] for call in runner.calls if call[:2] == ["bash", "-c"]]
    assert any(script.endswith("sdk install java 8.0.45-zulu") for script in scripts)
    assert any(script.endswith("sdk install java 11.0.26-zulu") for script in scripts)
    assert produced["java_homes"]["java11"] == ctx.home / ".sdkman" / "candidates" / "java" / "11.0.26-zulu"


def test_java_uses_platform_versions():
    java = devenv_setup.JavaSettings()
    assert java.versions_for("macos")["java8"] == "8.0.442-zulu"
    assert java.versions_for("linux")["java8"] == "8.0.45-zulu"


def test_java_satisfied_when_candidates_exist(tmp_path):
    ctx = make_ctx(tmp_path)
    _sdkman(ctx)
    for version in ("8.0.45-zulu", "11.0.26-zulu"):
        (ctx.home / ".sdkman" / "candidates" / "java" / version).mkdir(parents=True)

    assert step("java").is_satisfied(ctx) is True


def test_java_switcher_written_once(tmp_path):
    ctx = make_ctx(tmp_path)
    switcher = step("java-switcher")

    switcher.apply(ctx)
    assert switcher.is_satisfied(ctx) is True

    content = (ctx.home / ".java_switcher").read_text(encoding="utf-8")
    assert "function java8()" in content
    assert "sdk use java 11.0.26-zulu" in content
    rc = (ctx.home / ".bashrc").read_text(encoding="utf-8")
    assert rc.count("source ~/.java_switcher") == 1


def test_java_switcher_uses_zshrc_for_zsh(tmp_path):
    ctx = make_ctx(tmp_path, shell="/usr/bin/zsh")
    step("java-switcher").apply(ctx)
    assert "source ~/.java_switcher" in (ctx.home / ".zshrc").read_text(encoding="utf-8")


def test_rewrite_maven_settings():
    text = (
        "<settings><localRepository>C:\\Users\\bob\\.m2\\repository</localRepository>"
        "<url>file:///C:\\Users\\bob\\.m2\\repository</url></settings>"
    )
    local = pathlib.Path("/home/dev/.m2/repository")

    rewritten = devenv_setup.rewrite_maven_settings(text, local.as_uri(), local)

    assert "<localRepository>/home/dev/.m2/repository</localRepository>" in rewritten
    assert "<url>file:///home/dev/.m2/repository</url>" in rewritten


def test_maven_writes_settings_from_template_and_backs_up(tmp_path):
    runner = FakeRunner()
    ctx = make_ctx(tmp_path, runner)
    _sdkman(ctx)
    (ctx.cwd / "settings.xml").write_text(
        "<settings><localRepository>old</localRepository></settings>", encoding="utf-8"
    )
    settings = ctx.home / ".m2" / "settings.xml"
    settings.parent.mkdir()
    settings.write_text("previous", encoding="utf-8")

    step("maven").apply(ctx)

    local_repo = ctx.home / ".m2" / "repository"
    assert f"<localRepository>{local_repo}</localRepository>" in settings.read_text(encoding="utf-8")
    assert list(settings.parent.glob("settings.xml.bak-*"))
    scripts = [call[2] for call in runner.calls if call[:2] == ["bash", "-c"]]
    assert any(script.endswith("sdk install maven 3.6.3") for script in scripts)
    assert any(script.endswith("sdk default maven 3.6.3") for script in scripts)


def test_maven_default_template_when_no_settings(tmp_path):
    ctx = make_ctx(tmp_path)
    _sdkman(ctx)
    (ctx.home / ".sdkman" / "candidates" / "maven" / "3.6.3").mkdir(parents=True)

    step("maven").apply(ctx)

    assert step("maven").is_satisfied(ctx) is True


def _source_with_patch(ctx, git=True):
    source = ctx.cwd / "card-app-server"
    source.mkdir()
    if git:
        (source / ".git").mkdir()
    (ctx.cwd / "Setup-local-v2.patch").write_text("--- a\n+++ b\n", encoding="utf-8")
    ctx.set("source_dir", source)
    return source


def test_patch_satisfied_when_reverse_applies(tmp_path):
    runner = FakeRunner(responses={("git", "apply", "--check"): (1, "", "does not apply")})
    runner.responses[("git", "apply", "--check", "--reverse")] = (0, "", "")
    ctx = make_ctx(tmp_path, runner)
    _source_with_patch(ctx)

    assert step("patch").is_satisfied(ctx) is True


def test_patch_conflict_fails_without_forcing(tmp_path):
    runner = FakeRunner(responses={("git", "apply", "--check"): (1, "", "patch does not apply")})
    ctx = make_ctx(tmp_path, runner)
    _source_with_patch(ctx)

    assert step("patch").is_satisfied(ctx) is False
    with pytest.raises(devenv_sequencer.ExternalCommandFailed) as excinfo:
        step("patch").apply(ctx)
    assert "patch does not apply" in str(excinfo.value)
    assert not any(call[:2] == ["git", "apply"] and "--check" not in call for call in runner.calls)


def test_patch_applied_with_patch_tool_outside_git(tmp_path):
    runner = FakeRunner(responses={("patch", "--dry-run"): (0, "", "")})
    ctx = make_ctx(tmp_path, runner)
    _source_with_patch(ctx, git=False)

    step("patch").apply(ctx)

    assert runner.called("patch", "--forward", "-p1")


def _oracle_source(ctx):
    source = ctx.cwd / "card-app-server"
    for rel in ("card-member-core/conte", "card-ria/conte"):
        (source / rel).mkdir(parents=True)
    ctx.set("source_dir", source)
    return source


def test_oracle_satisfied_when_every_compose_project_runs(tmp_path):
    runner = FakeRunner(responses=COMPOSE_RUNNING)
    ctx = make_ctx(tmp_path, runner)
    assert step("oracle").is_satisfied(ctx) is False

    _oracle_source(ctx)
    assert step("oracle").is_satisfied(ctx) is True
    assert runner.calls.count(["docker-compose", "ps", "-q"]) == 2

    ctx.set("recreate", True, overwrite=True)
    assert step("oracle").is_satisfied(ctx) is False


def test_oracle_not_satisfied_when_a_service_exited(tmp_path):
    runner = FakeRunner(
        responses={
            ("docker-compose", "ps", "-q"): (0, "abc\ndef\n", ""),
            ("docker", "inspect"): (0, "true\nfalse\n", ""),
        }
    )
    ctx = make_ctx(tmp_path, runner)
    _oracle_source(ctx)

    assert step("oracle").is_satisfied(ctx) is False


def test_oracle_partial_start_resumes_without_prompting(tmp_path):
    runner = FakeRunner(tools={"docker"})
    ctx = make_ctx(tmp_path, runner)
    source = _oracle_source(ctx)
    member_core = source / "card-member-core" / "conte"

    def compose_ps(cmd):
        return (0, "abc\n", "") if runner.cwd == member_core else (0, "", "")

    runner.responses.update(
        {
            ("docker", "ps"): (0, "abc\n", ""),
            ("docker", "inspect"): (0, "true\n", ""),
            ("docker", "images"): (0, "oracle/database:21.3.0-xe-builded\n", ""),
            ("docker-compose", "ps", "-q"): compose_ps,
        }
    )

    assert step("oracle").is_satisfied(ctx) is False
    step("oracle").apply(ctx)

    assert not runner.called("docker", "stop")
    assert runner.calls.count(["docker-compose", "up", "-d"]) == 2


def test_oracle_starts_compose_when_image_present(tmp_path):
    runner = FakeRunner(
        tools={"docker"},
        responses={
            ("docker", "ps"): (0, "", ""),
            ("docker", "images"): (0, "oracle/database:21.3.0-xe-builded\n", ""),
        },
    )
    ctx = make_ctx(tmp_path, runner)
    source = _oracle_source(ctx)

    step("oracle").apply(ctx)

    assert not runner.called("docker", "load")
    assert runner.calls.count(["docker-compose", "up", "-d"]) == 2
    assert (source / "card-ria" / "conte").is_dir()


def test_oracle_loads_image_from_downloads(tmp_path):
    runner = FakeRunner(tools={"docker"}, responses={("docker", "images"): (0, "", "")})
    ctx = make_ctx(tmp_path, runner)
    _oracle_source(ctx)
    archive = ctx.home / "Downloads" / "oracle-21.3.0-xe-builded.tar"
    archive.parent.mkdir()
    archive.write_text("", encoding="utf-8")

    step("oracle").apply(ctx)

    assert ["docker", "load", "-i", str(archive)] in runner.calls


def test_oracle_skip_choice_is_recorded_as_skipped(tmp_path):
    runner = FakeRunner(tools={"docker"}, responses={("docker", "images"): (0, "", "")})
    ctx = make_ctx(tmp_path, runner, answers=["", "3"])
    _oracle_source(ctx)

    with pytest.raises(devenv_sequencer.UserAbort):
        step("oracle").apply(ctx)


def test_oracle_running_containers_kept_when_declined(tmp_path):
    runner = FakeRunner(tools={"docker"}, responses={("docker", "ps"): (0, "abc\n", ""), **COMPOSE_RUNNING})
    ctx = make_ctx(tmp_path, runner, recreate=True)
    _oracle_source(ctx)

    with pytest.raises(devenv_sequencer.UserAbort):
        step("oracle").apply(ctx)
    assert not runner.called("docker", "stop")


def _payara(ctx):
    payara = ctx.cwd / "payara5"
    asadmin = payara / "bin" / "asadmin"
    asadmin.parent.mkdir(parents=True)
    asadmin.write_text("#!/bin/sh\n", encoding="utf-8")
    ctx.set("payara_dir", payara)
    return payara


def test_copy_files_copies_driver_once(tmp_path):
    ctx = make_ctx(tmp_path)
    source = ctx.cwd / "card-app-server"
    driver = source / "card-member-core" / "conte" / "resources" / "ojdbc10.jar"
    driver.parent.mkdir(parents=True)
    driver.write_bytes(b"jar")
    ctx.set("source_dir", source)
    payara = _payara(ctx)

    assert step("copy-files").is_satisfied(ctx) is False
    step("copy-files").apply(ctx)

    assert (payara / "glassfish" / "lib" / "ojdbc10.jar").read_bytes() == b"jar"
    assert step("copy-files").is_satisfied(ctx) is True


def test_copy_files_requires_driver(tmp_path):
    ctx = make_ctx(tmp_path)
    source = ctx.cwd / "card-app-server"
    source.mkdir()
    ctx.set("source_dir", source)
    _payara(ctx)

    with pytest.raises(devenv_sequencer.PrerequisiteMissing):
        step("copy-files").apply(ctx)


def _configured_domain(payara, name):
    marker = payara / "glassfish" / "domains" / name / "config" / devenv_setup.DOMAIN_MARKER
    marker.parent.mkdir(parents=True)
    marker.write_text("java_home=/opt/jdk11\n", encoding="utf-8")
    return marker


def test_payara_creates_and_configures_domains(tmp_path):
    runner = FakeRunner()
    ctx = make_ctx(tmp_path, runner, java_homes={"java11": pathlib.Path("/opt/jdk11")})
    payara = _payara(ctx)
    asadmin = str(payara / "bin" / "asadmin")

    step("payara").apply(ctx)

    assert [asadmin, "create-domain", "--nopassword", "--portbase", "8000", "ria"] in runner.calls
    assert [asadmin, "create-domain", "--nopassword", "--portbase", "8100", "member-core"] in runner.calls
    java_home_cmd = [
        asadmin,
        "--port",
        "8148",
        "set",
        "configs.config.server-config.java-config.java-home=/opt/jdk11",
    ]
    assert java_home_cmd in runner.calls
    assert any(call[:4] == [asadmin, "--port", "8148", "create-jdbc-connection-pool"] for call in runner.calls)
    assert [asadmin, "stop-domain", "ria"] in runner.calls
    assert step("payara").is_satisfied(ctx) is True


def test_payara_deletes_domain_when_command_fails(tmp_path):
    runner = FakeRunner()
    ctx = make_ctx(tmp_path, runner)
    payara = _payara(ctx)
    asadmin = str(payara / "bin" / "asadmin")
    runner.responses[(asadmin, "--port", "8048", "create-jvm-options")] = (1, "", "bad option")

    with pytest.raises(devenv_sequencer.ExternalCommandFailed):
        step("payara").apply(ctx)
    assert [asadmin, "stop-domain", "ria"] in runner.calls
    assert [asadmin, "delete-domain", "ria"] in runner.calls
    assert runner.calls.index([asadmin, "stop-domain", "ria"]) < runner.calls.index([asadmin, "delete-domain", "ria"])
    assert not (payara / "glassfish" / "domains" / "ria" / "config" / devenv_setup.DOMAIN_MARKER).exists()
    assert not any("member-core" in call for call in runner.calls)


def test_payara_failed_configuration_is_rebuilt_on_next_run(tmp_path):
    runner = FakeRunner()
    ctx = make_ctx(tmp_path, runner, java_homes={"java11": pathlib.Path("/opt/jdk11")})
    payara = _payara(ctx)
    asadmin = str(payara / "bin" / "asadmin")
    domains = payara / "glassfish" / "domains"
    failures = iter([(1, "", "db down")])

    def create_domain(cmd):
        (domains / cmd[-1] / "config").mkdir(parents=True)
        return (0, "", "")

    def delete_domain(cmd):
        shutil.rmtree(domains / cmd[-1])
        return (0, "", "")

    runner.responses[(asadmin, "create-domain")] = create_domain
    runner.responses[(asadmin, "delete-domain")] = delete_domain
    runner.responses[(asadmin, "--port", "8148", "create-jdbc-connection-pool")] = lambda cmd: next(
        failures, (0, "", "")
    )
    sequencer = Sequencer([dataclasses.replace(step("payara"), depends_on=())])

    records = [sequencer.run(ctx).records[-1] for _ in range(3)]

    assert [record.outcome for record in records] == [
        StepOutcome.FAILED,
        StepOutcome.SUCCEEDED,
        StepOutcome.SKIPPED,
    ]
    assert "db down" in records[0].message
    assert runner.calls.count([asadmin, "create-domain", "--nopassword", "--portbase", "8000", "ria"]) == 1
    assert runner.calls.count([asadmin, "create-domain", "--nopassword", "--portbase", "8100", "member-core"]) == 2
    assert (domains / "member-core" / "config" / devenv_setup.DOMAIN_MARKER).is_file()


def test_payara_unfinished_domain_kept_when_declined(tmp_path):
    runner = FakeRunner()
    ctx = make_ctx(tmp_path, runner)
    payara = _payara(ctx)
    (payara / "glassfish" / "domains" / "ria").mkdir(parents=True)

    step("payara").apply(ctx)

    assert not any("delete-domain" in call for call in runner.calls)
    assert not any(call[-1:] == ["ria"] and "create-domain" in call for call in runner.calls)
    assert any("create-domain" in call and "member-core" in call for call in runner.calls)


def test_payara_configured_domain_is_left_alone(tmp_path):
    def refuse(question):
        raise AssertionError(f"unexpected prompt: {question}")

    runner = FakeRunner()
    ctx = make_ctx(tmp_path, runner, confirm=refuse)
    payara = _payara(ctx)
    _configured_domain(payara, "ria")

    step("payara").apply(ctx)

    assert not any(call[-1:] == ["ria"] and "create-domain" in call for call in runner.calls)
    assert any("create-domain" in call and "member-core" in call for call in runner.calls)


def test_payara_satisfied_only_when_domains_are_configured(tmp_path):
    ctx = make_ctx(tmp_path)
    payara = _payara(ctx)
    for name in ("ria", "member-core"):
        (payara / "glassfish" / "domains" / name).mkdir(parents=True)
    assert step("payara").is_satisfied(ctx) is False

    for name in ("ria", "member-core"):
        _configured_domain(payara, name)
    assert step("payara").is_satisfied(ctx) is True

    ctx.set("recreate", True, overwrite=True)
    assert step("payara").is_satisfied(ctx) is False


def test_cleanup_removes_temp_files_and_old_logs(tmp_path):
    ctx = make_ctx(tmp_path)
    tmp_file = ctx.cwd / "build" / "x.tmp"
    tmp_file.parent.mkdir()
    tmp_file.write_text("", encoding="utf-8")
    old_log = ctx.cwd / "setup_20200101_000000.log"
    old_log.write_text("", encoding="utf-8")
    old = time.time() - 30 * 86400
    os.utime(old_log, (old, old))
    new_log = ctx.cwd / "setup_20990101_000000.log"
    new_log.write_text("", encoding="utf-8")

    assert step("cleanup").is_satisfied(ctx) is False
    step("cleanup").apply(ctx)

    assert not tmp_file.exists()
    assert not old_log.exists()
    assert new_log.exists()
    assert step("cleanup").is_satisfied(ctx) is True


def test_cleanup_dry_run_keeps_files(tmp_path):
    ctx = make_ctx(tmp_path, FakeRunner(dry_run=True))
    leftover = ctx.cwd / "a.bak"
    leftover.write_text("", encoding="utf-8")

    step("cleanup").apply(ctx)

    assert leftover.exists()


def test_second_run_skips_when_environment_is_provisioned(tmp_path):
    runner = FakeRunner(
        tools={"curl", "zip", "unzip", "tar", "docker"},
        responses={
            ("docker", "ps"): (0, "abc\n", ""),
            ("git", "apply", "--check"): (1, "", ""),
            **COMPOSE_RUNNING,
        },
    )
    runner.responses[("git", "apply", "--check", "--reverse")] = (0, "", "")
    ctx = make_ctx(tmp_path, runner)
    _sdkman(ctx)
    for version in ("8.0.45-zulu", "11.0.26-zulu"):
        (ctx.home / ".sdkman" / "candidates" / "java" / version).mkdir(parents=True)
    (ctx.home / ".sdkman" / "candidates" / "maven" / "3.6.3").mkdir(parents=True)
    source = _source_with_patch(ctx)
    driver = source / "card-member-core" / "conte" / "resources" / "ojdbc10.jar"
    driver.parent.mkdir(parents=True)
    driver.write_bytes(b"jar")
    payara = _payara(ctx)
    for name in ("ria", "member-core"):
        _configured_domain(payara, name)
    (source / "card-ria" / "conte").mkdir(parents=True)

    first = CATALOG.run(ctx)
    assert first.status is RunStatus.COMPLETED

    second = CATALOG.run(ctx)

    assert second.status is RunStatus.COMPLETED
    assert all(record.outcome is StepOutcome.SKIPPED for record in second.records)
