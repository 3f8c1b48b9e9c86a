"""
Environment definitions, promotion policy resolution and repository location.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Tuple

from utils import DEV_ENVIRONMENT_KEY


class PromotionStrategy(str, Enum):
    NEVER = "Never"
    AUTOMATIC = "Automatic"
    MANUAL = "Manual"


class UnknownEnvironment(ValueError):
    def __init__(self, names: Iterable[str]):
        self.names = list(names)
        super().__init__(f"Unknown environment(s): {', '.join(self.names)}")


class NoEligibleEnvironments(ValueError):
    pass


class UnresolvableRepository(ValueError):
    pass


@dataclass(frozen=True)
class EnvironmentConfig:
    key: str
    namespace: str
    git_url: str = ""
    promotion_strategy: PromotionStrategy = PromotionStrategy.NEVER

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EnvironmentConfig":
        if not data.get("key"):
            raise ValueError(f"Environment is missing a 'key': {data}")
        strategy = data.get("promotionStrategy") or PromotionStrategy.NEVER.value
        try:
            promotion_strategy = PromotionStrategy(strategy)
        except ValueError:
            raise ValueError(
                f"Invalid promotionStrategy '{strategy}' for environment '{data['key']}'"
            ) from None
        return cls(
            key=data["key"],
            namespace=data.get("namespace") or f"jx-{data['key']}",
            git_url=data.get("gitUrl") or "",
            promotion_strategy=promotion_strategy,
        )

    @property
    def is_dev(self) -> bool:
        return self.key == DEV_ENVIRONMENT_KEY


def load_environments(environment_dicts: List[Dict[str, Any]]) -> List[EnvironmentConfig]:
    """Build environments from the requirements document, rejecting duplicate keys."""
    environments = [EnvironmentConfig.from_dict(d) for d in environment_dicts]
    seen = set()
    for env in environments:
        if env.key in seen:
            raise ValueError(f"Duplicate environment key: {env.key}")
        seen.add(env.key)
    return environments


@dataclass(frozen=True)
class Selection:
    """Which environments a promotion asks for."""

    kind: str
    names: Tuple[str, ...] = ()

    SINGLE = "single"
    ALL = "all"
    EXPLICIT = "explicit"

    @classmethod
    def single(cls, name: str) -> "Selection":
        return cls(cls.SINGLE, (name,))

    @classmethod
    def all(cls) -> "Selection":
        return cls(cls.ALL)

    @classmethod
    def explicit(cls, names: Iterable[str]) -> "Selection":
        return cls(cls.EXPLICIT, tuple(names))


def is_eligible(env: EnvironmentConfig) -> bool:
    return not env.is_dev and env.promotion_strategy in (
        PromotionStrategy.AUTOMATIC,
        PromotionStrategy.MANUAL,
    )


def resolve_targets(
    environments: List[EnvironmentConfig], selection: Selection
) -> List[EnvironmentConfig]:
    """Resolve a selection to the ordered environments to promote to.

    Explicitly named environments are returned whatever their strategy;
    only the "all" selection applies the promotion policy.
    """
    if selection.kind == Selection.ALL:
        targets = [env for env in environments if is_eligible(env)]
        if not targets:
            raise NoEligibleEnvironments(
                "No environments with an Automatic or Manual promotion strategy"
            )
        return targets

    by_key = {env.key: env for env in environments}
    missing = [name for name in selection.names if name not in by_key]
    if missing:
        raise UnknownEnvironment(missing)
    if not selection.names:
        raise NoEligibleEnvironments("No environment names given")
    return [by_key[name] for name in selection.names]


def locate_repository(env: EnvironmentConfig, dev_git_url: str = "") -> str:
    """Return the git URL holding an environment's configuration.

    Environments without their own repository are declared inside the dev
    environment repository.
    """
    git_url = env.git_url or dev_git_url
    if not git_url:
        raise UnresolvableRepository(
            f"Environment '{env.key}' has no gitUrl and no dev environment repository is configured"
        )
    return git_url


_FULL_NAME_PATTERN = re.compile(r"^(?:[a-z+]+://[^/]+/|[^@]+@[^:]+:)(?P<name>.+?)(?:\.git)?/?$")


def repo_full_name(git_url: str) -> str:
    """Turn a https or ssh git URL into 'owner/name'."""
    match = _FULL_NAME_PATTERN.match(git_url)
    if not match:
        raise ValueError(f"Cannot parse repository name from git URL: {git_url}")
    return match.group("name")
