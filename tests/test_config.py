import logging
import textwrap

from worker_manager.config import ManagerOptions, load_config
from worker_manager.log import LOG_FORMAT, setup_logging


def write_config(tmp_path, content):
    path = tmp_path / "worker_manager.yaml"
    path.write_text(textwrap.dedent(content))
    return path


def test_missing_file_yields_defaults(tmp_path):
    options = load_config(tmp_path / "missing.yaml", environ={})

    assert options.base_dir == tmp_path.resolve()
    assert options.output_directory == tmp_path.resolve() / "process-results"
    assert options.scripts_directory == tmp_path.resolve() / "process-scripts"
    assert options.log_dir == tmp_path.resolve() / "log"
    assert options.max_processes == 0
    assert options.api_port == 3000
    assert options.defaults.autorestart is True


def test_values_are_read_from_yaml(tmp_path):
    path = write_config(tmp_path, """
        output_directory: out
        scripts_directory: /opt/scripts
        max_processes: 5
        logging:
          level: DEBUG
          max_size_mb: 2
        restart:
          delay_seconds: 3
          max_consecutive_failures: 4
        api:
          host: 127.0.0.1
          port: 8088
        defaults:
          instances: 2
          execMode: cluster
          env:
            NODE_ENV: production
    """)

    options = load_config(path, environ={})

    assert options.output_directory == tmp_path.resolve() / "out"
    assert str(options.scripts_directory) == "/opt/scripts"
    assert options.max_processes == 5
    assert options.log_level == "DEBUG"
    assert options.max_log_size_mb == 2
    assert options.restart_delay == 3
    assert options.max_consecutive_failures == 4
    assert options.failure_reset_seconds == 60
    assert options.api_host == "127.0.0.1"
    assert options.api_port == 8088
    assert options.defaults.instances == 2
    assert options.defaults.exec_mode == "cluster"
    assert options.defaults.env == {"NODE_ENV": "production"}


def test_empty_file_yields_defaults(tmp_path):
    path = write_config(tmp_path, "")
    options = load_config(path, environ={})
    assert options.api_host == "0.0.0.0"


def test_scripts_directory_env_override(tmp_path):
    path = write_config(tmp_path, "scripts_directory: from-file\n")

    options = load_config(path, environ={"SCRIPTS_DIRECTORY": "from-env"})

    assert options.scripts_directory == tmp_path.resolve() / "from-env"


def test_config_path_from_env(tmp_path):
    path = write_config(tmp_path, "max_processes: 9\n")

    options = load_config(environ={"WORKER_MANAGER_CONFIG": str(path)})

    assert options.max_processes == 9


def test_manager_options_keeps_absolute_paths(tmp_path):
    options = ManagerOptions(base_dir=tmp_path, output_directory=tmp_path / "abs")
    assert options.output_directory == tmp_path / "abs"
    assert options.resolve("rel") == tmp_path.resolve() / "rel"


def test_setup_logging_installs_handlers(tmp_path):
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        log_file = tmp_path / "log" / "manager.log"
        setup_logging("debug", log_file)

        assert root.level == logging.DEBUG
        assert len(root.handlers) == 2
        assert all(h.formatter._fmt == LOG_FORMAT for h in root.handlers)

        logging.getLogger("worker_manager.test").info("[job] hello")
        for handler in root.handlers:
            handler.flush()
        assert "[worker_manager.test] - [job] hello" in log_file.read_text()

        setup_logging("nonsense")
        assert root.level == logging.INFO
        assert len(root.handlers) == 1
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
