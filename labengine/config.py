import logging
import os

from dotenv import find_dotenv, load_dotenv

logger = logging.getLogger(__name__)


def _safe_load_dotenv():
    """Load a .env file, trying the encodings Windows editors tend to save with."""
    dotenv_path = find_dotenv(usecwd=True)
    if not dotenv_path:
        return False

    for enc in ("utf-8", "utf-8-sig", "utf-16", "latin-1"):
        try:
            load_dotenv(dotenv_path, encoding=enc, override=False)
            return True
        except UnicodeDecodeError:
            continue
    logger.warning("Could not decode %s; using environment defaults", dotenv_path)
    return False


def _flag(name, default="false"):
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Settings read from the environment (and .env) when the class is created."""

    LOG_LEVEL = "INFO"
    LOG_JSON = False
    TEMPLATE_DIR = None

    @classmethod
    def from_env(cls):
        _safe_load_dotenv()

        class _Loaded(cls):
            LOG_LEVEL = os.environ.get("LABENGINE_LOG_LEVEL", cls.LOG_LEVEL).upper()
            LOG_JSON = _flag("LABENGINE_LOG_JSON", str(cls.LOG_JSON))
            TEMPLATE_DIR = os.environ.get("LABENGINE_TEMPLATE_DIR") or cls.TEMPLATE_DIR

        _Loaded.__name__ = cls.__name__
        return _Loaded


class DevelopmentConfig(Config):
    LOG_LEVEL = "DEBUG"


class ProductionConfig(Config):
    LOG_JSON = True


class TestingConfig(Config):
    __test__ = False

    LOG_LEVEL = "WARNING"
    TEMPLATE_DIR = None


config = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
    "default": Config,
}


def get_config(name=None):
    """Config class for ``name`` (or ``LABENGINE_ENV``) with environment overrides applied."""
    name = name or os.environ.get("LABENGINE_ENV", "default")
    try:
        base = config[name]
    except KeyError:
        raise ValueError(f"Unknown configuration: {name}") from None
    return base.from_env()
