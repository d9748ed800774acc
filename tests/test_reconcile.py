"""Scenario tests for the deployment reconciler."""
from __future__ import annotations

import json
from collections.abc import Callable

from conftest import CA_FILES, SECRET_FILES, FakeCompose, write_archive
from nbdeploy.ca import CAState
from nbdeploy.config import AppConfig
from nbdeploy.exit_codes import ExitCode
from nbdeploy.lifecycle import SecretSource
from nbdeploy.locking import LockManager
from nbdeploy.providers.compose import ServiceHealth
from nbdeploy.reconcile import DeploymentReconciler, Outcome, Phase, PhaseStatus
from nbdeploy.secret_store import SecretCategory
from nbdeploy.selection import DeploymentMode, DeploymentSelection
from nbdeploy.templates import TemplateEngine


def _reconciler(
    config: AppConfig,
    compose: FakeCompose,
    *,
    confirm: Callable[[str, bool], bool] | None = None,
    locks: LockManager | None = None,
) -> DeploymentReconciler:
    return DeploymentReconciler(
        config,
        compose_factory=lambda _setup_dir: compose,  # type: ignore[arg-type,return-value]
        confirm=confirm,
        locks=locks,
        sleep=lambda _seconds: None,
    )


def _selection(config: AppConfig, mode: DeploymentMode = DeploymentMode.PROD) -> DeploymentSelection:
    return DeploymentSelection(domain="example.com", setup_dir=config.setup_dir, mode=mode)


def test_fresh_deployment_without_backups(
    make_config: Callable[..., AppConfig],
    fake_compose: FakeCompose,
) -> None:
    """No archives: secrets generated, CA healthy, provisioner added, success."""
    config = make_config()

    report = _reconciler(config, fake_compose).run(_selection(config))

    assert report.outcome is Outcome.SUCCESS
    assert report.exit_code is ExitCode.OK
    assert [result.phase for result in report.phases] == list(Phase)
    assert report.selection.backup is None
    assert report.secrets is not None
    assert set(report.secrets.sources.values()) == {SecretSource.GENERATED}
    assert report.ca is not None and report.ca.state is CAState.PROVISIONER_ADDED

    setup = config.setup_dir
    auth = report.secrets.value(SecretCategory.AUTH_SECRET)
    assert f"NB_AUTH_SECRET={auth}" in (setup / "relay.env").read_text(encoding="utf-8")
    management = json.loads((setup / "management" / "config.json").read_text(encoding="utf-8"))
    assert management["DataStoreEncryptionKey"] == report.secrets.value(SecretCategory.DATASTORE_ENCRYPTION_KEY)
    assert "example.com" in (setup / "docker-compose.yml").read_text(encoding="utf-8")
    assert (setup / "dashboard.env").exists()
    assert fake_compose.calls_named("up")[-1] == ("up", None)


def test_restore_secrets_and_ca_without_coordination_data(
    make_config: Callable[..., AppConfig],
    fake_compose: FakeCompose,
) -> None:
    """Secrets and CA restored verbatim; CA not polled; management data untouched."""
    config = make_config()
    write_archive(
        config.backups.root / "netbird-backup-20240101-120000.tar.gz",
        {**SECRET_FILES, **CA_FILES},
    )

    report = _reconciler(config, fake_compose).run(_selection(config), backup_choice=1)

    assert report.outcome is Outcome.SUCCESS
    assert report.selection.backup is not None
    assert report.secrets is not None
    assert set(report.secrets.sources.values()) == {SecretSource.RESTORED}
    assert report.secrets.value(SecretCategory.AUTH_SECRET) == "restored-auth"
    assert (config.setup_dir / "step-ca-data" / "password").read_text(encoding="utf-8") == "restored-ca-password\n"
    assert report.ca is not None and report.ca.state is CAState.RESTORED
    assert fake_compose.calls_named("health") == []
    assert not (config.setup_dir / "management" / "data").exists()
    coordination = next(result for result in report.phases if result.phase is Phase.COORDINATION_DATA)
    assert coordination.status is PhaseStatus.WARNING


def test_corrupt_archive_regenerates_everything(
    make_config: Callable[..., AppConfig],
    fake_compose: FakeCompose,
) -> None:
    """A corrupt archive still deploys, with fresh secrets and a warning."""
    config = make_config()
    config.backups.root.mkdir(parents=True)
    (config.backups.root / "netbird-backup-20240101-120000.tar.gz").write_bytes(b"corrupt")

    report = _reconciler(config, fake_compose).run(_selection(config), backup_choice="1")

    assert report.outcome is Outcome.SUCCESS
    assert report.secrets is not None
    assert set(report.secrets.sources.values()) == {SecretSource.GENERATED}
    assert report.warnings
    assert report.ca is not None and report.ca.state is CAState.PROVISIONER_ADDED


def test_coordination_data_restored_with_modes(
    make_config: Callable[..., AppConfig],
    fake_compose: FakeCompose,
) -> None:
    """Management data in the archive is extracted and made readable."""
    config = make_config()
    write_archive(
        config.backups.root / "netbird-backup-20240101-120000.tar.gz",
        {**SECRET_FILES, "management/data/store.db": "sqlite"},
    )

    report = _reconciler(config, fake_compose).run(_selection(config), backup_choice=1)

    store = config.setup_dir / "management" / "data" / "store.db"
    assert report.outcome is Outcome.SUCCESS
    assert store.read_text(encoding="utf-8") == "sqlite"
    assert oct(store.stat().st_mode & 0o777) == "0o755"
    # The datastore key is not confused with the data directory.
    assert report.secrets is not None
    assert report.secrets.sources[SecretCategory.DATASTORE_ENCRYPTION_KEY] is SecretSource.RESTORED


def test_chooser_and_invalid_choice(
    make_config: Callable[..., AppConfig],
    fake_compose: FakeCompose,
) -> None:
    """An out-of-range choice deploys fresh with a warning."""
    config = make_config()
    write_archive(config.backups.root / "netbird-backup-20240101-120000.tar.gz", SECRET_FILES)
    offered: list[int] = []

    def chooser(candidates: object) -> str:
        offered.append(len(candidates))  # type: ignore[arg-type]
        return "9"

    reconciler = DeploymentReconciler(
        config,
        compose_factory=lambda _setup_dir: fake_compose,  # type: ignore[arg-type,return-value]
        chooser=chooser,
        sleep=lambda _seconds: None,
    )
    report = reconciler.run(_selection(config))

    assert offered == [1]
    assert report.selection.backup is None
    assert any("defaulting to 0" in warning for warning in report.warnings)


def test_declined_cleanup_keeps_everything(make_config: Callable[..., AppConfig]) -> None:
    """Declining the cleanup prompt ends the run before any container, volume or file is removed."""
    config = make_config()
    config.setup_dir.mkdir(parents=True)
    relay = config.setup_dir / "relay.env"
    relay.write_text("existing\n", encoding="utf-8")
    compose = FakeCompose(containers=["c1"], volumes=["v1"])
    prompts: list[tuple[str, bool]] = []

    def decline(prompt: str, default: bool) -> bool:
        prompts.append((prompt, default))
        return False

    report = _reconciler(config, compose, confirm=decline).run(_selection(config))

    assert report.outcome is Outcome.DECLINED
    assert report.exit_code is ExitCode.OK
    assert prompts and prompts[0][1] is True
    assert relay.read_text(encoding="utf-8") == "existing\n"
    assert [result.phase for result in report.phases] == [Phase.CLEANUP]
    assert compose.calls_named("up") == []
    assert [call[0] for call in compose.calls] == ["list_containers", "list_volumes"]
    assert "1 container(s)" in prompts[0][0]
    assert "1 volume(s)" in prompts[0][0]


def test_declining_with_only_running_containers(make_config: Callable[..., AppConfig]) -> None:
    """Leftover containers alone are enough to require confirmation."""
    config = make_config()
    compose = FakeCompose(containers=["c1", "c2"])

    report = _reconciler(config, compose, confirm=lambda _prompt, _default: False).run(_selection(config))

    assert report.outcome is Outcome.DECLINED
    assert compose.calls_named("stop_containers") == []
    assert compose.calls_named("remove_containers") == []
    assert compose.calls_named("prune_networks") == []
    assert compose.containers == ["c1", "c2"]


def test_clean_host_is_not_prompted(
    make_config: Callable[..., AppConfig],
    fake_compose: FakeCompose,
) -> None:
    """Nothing to remove means no confirmation is requested."""
    config = make_config()
    prompts: list[str] = []

    def record(prompt: str, default: bool) -> bool:
        prompts.append(prompt)
        return False

    report = _reconciler(config, fake_compose, confirm=record).run(_selection(config))

    assert report.outcome is Outcome.SUCCESS
    assert prompts == []


def test_confirmed_cleanup_removes_artefacts(
    make_config: Callable[..., AppConfig],
    fake_compose: FakeCompose,
) -> None:
    """Accepted cleanup removes previous files and containers before deploying."""
    config = make_config()
    legacy = config.setup_dir / "secrets"
    legacy.mkdir(parents=True)
    (legacy / "old").write_text("x", encoding="utf-8")
    old_auth = config.setup_dir / "management" / "nb_auth_secret"
    old_auth.parent.mkdir(parents=True)
    old_auth.write_text("stale\n", encoding="utf-8")
    fake_compose.containers = ["c1", "c2"]
    fake_compose.volumes = ["v1"]

    report = _reconciler(config, fake_compose).run(_selection(config))

    assert report.outcome is Outcome.SUCCESS
    assert not legacy.exists()
    assert report.secrets is not None
    assert report.secrets.value(SecretCategory.AUTH_SECRET) != "stale"
    assert fake_compose.calls_named("remove_containers") == [("remove_containers", ("c1", "c2"))]
    assert fake_compose.calls_named("remove_volumes") == [("remove_volumes", ("v1",))]


def test_ca_timeout_fails_run(make_config: Callable[..., AppConfig]) -> None:
    """A CA that never turns healthy stops the run before activation."""
    config = make_config()
    compose = FakeCompose(health=[ServiceHealth.STARTING])

    report = _reconciler(config, compose).run(_selection(config))

    assert report.outcome is Outcome.FAILED
    assert report.exit_code is ExitCode.PROVIDER
    assert report.failed_phase is Phase.CA_BOOTSTRAP
    failed = report.phases[-1]
    assert failed.detail and "waiting for database" in failed.detail
    assert compose.calls_named("provisioners") == []
    assert ("up", None) not in compose.calls


def test_missing_template_is_fatal(
    make_config: Callable[..., AppConfig],
    fake_compose: FakeCompose,
) -> None:
    """A broken override template fails the render phase with a validation code."""
    config = make_config()
    override = config.templates_dir / "netbird" / "relay.env.j2"
    override.parent.mkdir(parents=True)
    override.write_text("{{ missing_value }}\n", encoding="utf-8")

    report = DeploymentReconciler(
        config,
        templates=TemplateEngine.with_overrides(config.templates_dir),
        compose_factory=lambda _setup_dir: fake_compose,  # type: ignore[arg-type,return-value]
        sleep=lambda _seconds: None,
    ).run(_selection(config))

    assert report.outcome is Outcome.FAILED
    assert report.failed_phase is Phase.RENDER
    assert report.exit_code is ExitCode.VALIDATION
    assert fake_compose.calls_named("up") == []


def test_dev_mode_renders_dev_compose(
    make_config: Callable[..., AppConfig],
    fake_compose: FakeCompose,
) -> None:
    """Dev mode renders the compose variant exposing the proxy dashboard."""
    config = make_config()

    report = _reconciler(config, fake_compose).run(_selection(config, DeploymentMode.DEV))

    assert report.outcome is Outcome.SUCCESS
    assert "traefik.example.com" in (config.setup_dir / "docker-compose.yml").read_text(encoding="utf-8")


def test_lock_contention_fails_with_environment_code(
    make_config: Callable[..., AppConfig],
    fake_compose: FakeCompose,
) -> None:
    """A held deployment lock makes the run fail without touching anything."""
    config = make_config(lock_timeout=0.1)
    locks = LockManager(config.runtime_dir, config.lock_timeout)

    with locks.deployment_lock(config.setup_dir):
        report = _reconciler(config, fake_compose, locks=locks).run(_selection(config))

    assert report.outcome is Outcome.FAILED
    assert report.exit_code is ExitCode.ENVIRONMENT
    assert report.phases == []
    assert fake_compose.calls == []
