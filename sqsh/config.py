"""
Configuration classes for sqsh. The configuration file holds named
connection profiles, one TOML section per profile:

    [prod]
    url = "postgresql+pg8000://${USER}@dbhost/sales"
    history = "~/.sqsh-prod-history"
"""

import json
import os
import re
from dataclasses import dataclass
from pathlib import Path
from string import Template
import tomllib
from typing import Any, Self

BARE_KEY = re.compile(r"^[A-Za-z0-9_-]+$")


class ConfigurationError(Exception):
    """
    Thrown to indicate a configuration error.
    """


@dataclass(frozen=True)
class ConnectionConfig:
    """
    A single connection profile. `url` and `history_file` have had
    environment references substituted; `raw_url` and `raw_history` are as
    written in the file.
    """

    name: str
    url: str
    history_file: Path | None = None
    raw_url: str | None = None
    raw_history: str | None = None


class EnvDict(dict):
    """
    For environment substitution, we want a reference to a non-existent
    variable to substitute "", rather than throw an error (as with
    Template.substitute()) or leave the reference intact (as with
    Template.safe_substitute()). To do that, we simply use a custom
    dictionary class.
    """

    def __init__(self: Self, *args, **kw) -> None:
        """Initialize the dictionary"""
        super().__init__()
        self.update(*args, **kw)

    def __getitem__(self: Self, key: Any) -> Any:
        """Get an item from the dictionary"""
        return super().get(key, "")


def make_connection_config(
    name: str, url: str, history: str | None = None
) -> ConnectionConfig:
    """
    Build a profile, substituting environment variables in the URL and
    history path, and expanding "~" in the history path.
    """
    env = EnvDict(**os.environ)
    history_file = None
    if history is not None:
        history_file = Path(Template(history).substitute(env)).expanduser()

    return ConnectionConfig(
        name=name,
        url=Template(url).substitute(env),
        history_file=history_file,
        raw_url=url,
        raw_history=history,
    )


class Configuration:
    """
    The connection profiles, as loaded from (and saved to) the
    configuration file.
    """

    def __init__(self: Self, configs: list[ConnectionConfig], path: Path) -> None:
        """
        Initialize a Configuration object.
        """
        self._configs = {c.name: c for c in configs}
        self._path = path

    @property
    def path(self: Self) -> Path:
        """
        Returns the path associated with the configuration.
        """
        return self._path

    def names(self: Self) -> list[str]:
        """
        The profile names, sorted.
        """
        return sorted(self._configs)

    def get(self: Self, name: str) -> ConnectionConfig | None:
        """
        Look up a profile by its exact name.
        """
        return self._configs.get(name)

    def put(self: Self, config: ConnectionConfig) -> None:
        """
        Add or replace a profile. Call save() to make it permanent.
        """
        self._configs[config.name] = config

    def remove(self: Self, name: str) -> bool:
        """
        Remove a profile. Call save() to make it permanent.

        :returns: True if the profile existed
        """
        return self._configs.pop(name, None) is not None

    def lookup(self: Self, spec: str) -> list[ConnectionConfig] | None:
        """
        Uses a string to look up a configuration. Returns a list of matching
        configurations, or None if no match. An exact match wins over
        prefix matches.
        """
        if (exact := self._configs.get(spec)) is not None:
            return [exact]

        matches = [
            c
            for c in self._configs.values()
            if c.name.lower().startswith(spec.lower())
        ]

        if len(matches) == 0:
            return None

        return matches

    def save(self: Self) -> None:
        """
        Write the profiles back to the configuration file.

        :raises ConfigurationError: if the file can't be written
        """

        def quote(s: str) -> str:
            # A JSON string is a valid TOML basic string.
            return json.dumps(s, ensure_ascii=False)

        lines: list[str] = []
        for name in self.names():
            config = self._configs[name]
            key = name if BARE_KEY.match(name) else quote(name)
            lines.append(f"[{key}]")
            lines.append(f"url = {quote(config.raw_url or config.url)}")
            history = config.raw_history
            if history is None and config.history_file is not None:
                history = str(config.history_file)
            if history is not None:
                lines.append(f"history = {quote(history)}")
            lines.append("")

        try:
            self._path.write_text("\n".join(lines), encoding="utf-8")
        except OSError as e:
            # pylint: disable=raise-missing-from
            raise ConfigurationError(f'Unable to write "{self._path}": {e}')


def load_configuration(config: Path) -> Configuration:
    """
    Reads the configuration file. A file that doesn't exist yields an
    empty configuration, which can still be saved. Raises
    ConfigurationError on error.

    :param config: Path to the configuration file, which does not have to
        exist
    """
    if not config.exists():
        return Configuration(configs=[], path=config)

    if not config.is_file():
        raise ConfigurationError(f'Configuration file "{config}" is not a file.')

    try:
        with open(config, mode="rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        # pylint: disable=raise-missing-from
        raise ConfigurationError(f'Unable to read "{config}": {e}')

    configs: list[ConnectionConfig] = []
    for key, values in data.items():
        if not isinstance(values, dict):
            raise ConfigurationError(
                f'"{config}": "{key}" is not a section.'
            )

        url = values.get("url")
        if url is None:
            raise ConfigurationError(
                f'"{config}": Section "{key}" has no "url" setting.'
            )

        configs.append(make_connection_config(key, url, values.get("history")))

    return Configuration(configs=configs, path=config)


class TooManyMatchesError(ConfigurationError):
    """
    Thrown when a connection name matches more than one profile.
    """


def lookup_connection(
    configuration: Configuration | None, name: str
) -> ConnectionConfig:
    """
    Look up a connection in the configuration. The passed name might be
    a complete URL, or it might be a name that matches a profile in the
    configuration file.

    :param configuration: configuration object or None
    :param name:          (partial or full) name of a profile, or a
                          complete URL

    :returns: the matching profile, or an unnamed one holding the URL

    :raises TooManyMatchesError: if `name` matches more than one profile
    """
    if configuration is None:
        return ConnectionConfig(name="", url=name)

    match configuration.lookup(name):
        case None:
            # Use the name as the URL.
            return ConnectionConfig(name="", url=name)

        case [cfg]:
            return cfg

        case configs:
            match_str = ", ".join([c.name for c in configs])
            raise TooManyMatchesError(
                f'"{name}" matches more than one section in '
                f'"{configuration.path}": {match_str}'
            )
