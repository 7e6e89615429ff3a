import logging
from logging.config import fileConfig
import importlib
import pkgutil
from pathlib import Path

from flask import current_app
from alembic import context

config = context.config

def _init_logging():
    ini = config.config_file_name
    if ini and Path(ini).exists():
        fileConfig(ini)
    else:
        logging.basicConfig(level=logging.INFO)

_init_logging()
logger = logging.getLogger("alembic.env")

# Flask-SQLAlchemy 3.x exposes the engine directly
def get_engine():
    return current_app.extensions["migrate"].db.engine

config.set_main_option("sqlalchemy.url", get_engine().url.render_as_string(hide_password=False).replace("%", "%%"))
target_db = current_app.extensions["migrate"].db

def get_metadata():
    if hasattr(target_db, "metadatas"):
        return target_db.metadatas[None]
    return target_db.metadata

def _autoload_models():
    """Import every creatorhub.models module so autogenerate sees all tables."""
    import creatorhub.models as models_pkg
    for m in pkgutil.iter_modules(models_pkg.__path__):
        importlib.import_module(f"creatorhub.models.{m.name}")

# Partial indexes: reflection loses the WHERE clause, so autogenerate would
# keep proposing drop/create pairs for them.
_PARTIAL_INDEXES = {"uq_user_subscriptions_active_triple"}

def _include_object(object, name, type_, reflected, compare_to):
    if type_ == "index" and name in _PARTIAL_INDEXES:
        return False
    if type_ == "index" and reflected and compare_to is None:
        # Never autogenerate an index DROP; write it by hand
        return False
    return True

def _is_sqlite(url) -> bool:
    return str(url).startswith("sqlite")

def run_migrations_offline():
    url = config.get_main_option("sqlalchemy.url")
    _autoload_models()
    context.configure(
        url=url,
        target_metadata=get_metadata(),
        literal_binds=True,
        compare_type=True,
        include_object=_include_object,
        render_as_batch=_is_sqlite(url),
    )
    with context.begin_transaction():
        context.run_migrations()

def run_migrations_online():
    def process_revision_directives(context_, revision, directives):
        if getattr(config.cmd_opts, "autogenerate", False):
            script = directives[0]
            if script.upgrade_ops.is_empty():
                directives[:] = []
                logger.info("No changes in schema detected.")

    _autoload_models()
    connectable = get_engine()
    with connectable.connect() as connection:
        # Flask-Migrate may already set some of these (compare_type, render_as_batch)
        conf_args = {
            **current_app.extensions["migrate"].configure_args,
            "target_metadata": get_metadata(),
            "compare_type": True,
            "include_object": _include_object,
            # SQLite cannot ALTER most constraints in place
            "render_as_batch": connection.dialect.name == "sqlite",
        }
        conf_args.setdefault("process_revision_directives", process_revision_directives)
        context.configure(connection=connection, **conf_args)
        with context.begin_transaction():
            context.run_migrations()

if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
