from pathlib import Path

import pytest

from duka_recon.config import load_app_config


def _write_config(tmp_path: Path, content: str) -> Path:
    path = tmp_path / "dukarecon_config.toml"
    path.write_text(content, encoding="utf-8")
    return path


def test_load_full_config(tmp_path):
    path = _write_config(
        tmp_path,
        """
[business]
business_id = "BIZ-AB12C"
name = "Mama Mboga Stores"

[database]
engine = "sqlite"
path = "db/shop.sqlite"

[import]
batch_limit = 250

[display]
mode = "both"

[logging]
level = "info"
""",
    )

    config = load_app_config(str(path))

    assert config.business.business_id == "BIZ-AB12C"
    assert config.business.name == "Mama Mboga Stores"
    assert config.business.currency == "KES"
    assert config.database.engine == "sqlite"
    assert config.database.path == (tmp_path / "db" / "shop.sqlite").resolve()
    assert config.batch_limit == 250
    assert config.display_mode == "both"
    assert config.log_level == "INFO"


def test_defaults_for_missing_sections(tmp_path):
    """A nearly empty file falls back to default values."""
    path = _write_config(tmp_path, "[business]\nbusiness_id = \"\"\n")

    config = load_app_config(str(path))

    assert config.business.business_id is None
    assert config.database.path == (tmp_path / "data/db/dukarecon.sqlite").resolve()
    assert config.batch_limit == 500
    assert config.display_mode == "table"
    assert config.log_level == "WARNING"


def test_missing_config_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_app_config(str(tmp_path / "nope.toml"))


@pytest.mark.parametrize(
    "content",
    [
        "this is = = not toml",
        "[display]\nmode = \"html\"\n",
        "[import]\nbatch_limit = 0\n",
        "[import]\nbatch_limit = \"many\"\n",
        "[logging]\nlevel = \"LOUD\"\n",
    ],
)
def test_invalid_config_values(tmp_path, content):
    path = _write_config(tmp_path, content)
    with pytest.raises(ValueError):
        load_app_config(str(path))
