"""Config file lookup.

Order, first match wins:

  1. the ``config`` argument on the command line
  2. the ``SERIALHUB_CONFIG`` environment variable
  3. ``serialhub.toml`` in ./, then $XDG_CONFIG_HOME/serialhub/
     (``~/.config/serialhub/``), then /etc/serialhub/

A name given by 1 or 2 must exist.  If none of 3 exists the daemon runs
on built-in defaults.
"""

import os

CONFIG_NAME = "serialhub.toml"
ENV_VAR = "SERIALHUB_CONFIG"
ETC_DIR = "/etc/serialhub"


def search_dirs() -> list[str]:
    """Return the directories searched for a bare config name, in order."""
    xdg = os.environ.get("XDG_CONFIG_HOME") or os.path.join(
        os.path.expanduser("~"), ".config",
    )
    return [os.getcwd(), os.path.join(xdg, "serialhub"), ETC_DIR]


def resolve_config(name: str | None = None) -> str | None:
    """Return the absolute path of the config file to load, or None.

    *name* falls back to ``$SERIALHUB_CONFIG``.  A name with a directory
    part (``conf/serialhub.toml``, ``~/sh.toml``) is used as-is; a bare
    name is looked up in ``search_dirs()``.  With neither set, the
    default name is searched for and None means "use defaults".

    Raises:
        FileNotFoundError: If a requested config file cannot be found.

    Example:
        >>> resolve_config("lab.toml")
        '/etc/serialhub/lab.toml'
    """
    if not name:
        name = os.environ.get(ENV_VAR)
    if not name:
        return _search(CONFIG_NAME)

    if os.path.dirname(name):
        path = os.path.abspath(os.path.expanduser(name))
        if not os.path.isfile(path):
            raise FileNotFoundError("config file not found: %s" % path)
        return path

    path = _search(name)
    if path is None:
        raise FileNotFoundError(
            "config file '%s' not found in %s" % (name, ", ".join(search_dirs()))
        )
    return path


def _search(name: str) -> str | None:
    for directory in search_dirs():
        path = os.path.join(directory, name)
        if os.path.isfile(path):
            return os.path.abspath(path)
    return None
