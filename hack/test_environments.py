#!/usr/bin/env python3
# /// script
# dependencies = ["pytest", "pyyaml"]
# ///

"""
Tests for promotion policy resolution and repository location.
"""

import pytest
from environments import (
    EnvironmentConfig,
    NoEligibleEnvironments,
    PromotionStrategy,
    Selection,
    UnknownEnvironment,
    UnresolvableRepository,
    load_environments,
    locate_repository,
    repo_full_name,
    resolve_targets,
)

DEV_URL = "https://github.com/jenkins-x-labs-bdd-tests/jx3-kubernetes-jenkins"


def create_environments():
    return load_environments(
        [
            {"key": "dev", "namespace": "jx", "promotionStrategy": "Never", "gitUrl": DEV_URL},
            {"key": "staging", "namespace": "jx-staging", "promotionStrategy": "Automatic"},
            {"key": "qa", "namespace": "jx-qa", "promotionStrategy": "Never"},
            {
                "key": "production",
                "namespace": "jx-production",
                "promotionStrategy": "Manual",
                "gitUrl": "https://github.com/jx3-gitops-repositories/jx3-gke-terraform-vault",
            },
        ]
    )


class TestEnvironmentConfig:
    def test_from_dict(self):
        env = EnvironmentConfig.from_dict(
            {"key": "staging", "namespace": "jx-staging", "promotionStrategy": "Automatic"}
        )

        assert env == EnvironmentConfig("staging", "jx-staging", "", PromotionStrategy.AUTOMATIC)

    def test_from_dict_defaults(self):
        env = EnvironmentConfig.from_dict({"key": "staging"})

        assert env.namespace == "jx-staging"
        assert env.promotion_strategy == PromotionStrategy.NEVER
        assert env.git_url == ""

    def test_from_dict_invalid_strategy(self):
        with pytest.raises(ValueError) as exc_info:
            EnvironmentConfig.from_dict({"key": "staging", "promotionStrategy": "Sometimes"})
        assert "Sometimes" in str(exc_info.value)

    def test_from_dict_missing_key(self):
        with pytest.raises(ValueError):
            EnvironmentConfig.from_dict({"namespace": "jx"})

    def test_duplicate_keys(self):
        with pytest.raises(ValueError) as exc_info:
            load_environments([{"key": "staging"}, {"key": "staging"}])
        assert "staging" in str(exc_info.value)


class TestResolveTargets:
    def test_all_eligible_in_document_order(self):
        targets = resolve_targets(create_environments(), Selection.all())

        assert [t.key for t in targets] == ["staging", "production"]

    def test_all_never_excluded(self):
        """Environments with strategy Never never appear in an all selection."""
        for strategy in PromotionStrategy:
            environments = [
                EnvironmentConfig("a", "jx-a", promotion_strategy=strategy),
                EnvironmentConfig("b", "jx-b", promotion_strategy=PromotionStrategy.MANUAL),
            ]
            targets = resolve_targets(environments, Selection.all())

            assert all(t.promotion_strategy != PromotionStrategy.NEVER for t in targets)

    def test_all_excludes_dev_whatever_the_strategy(self):
        environments = [
            EnvironmentConfig("dev", "jx", DEV_URL, PromotionStrategy.AUTOMATIC),
            EnvironmentConfig("staging", "jx-staging", "", PromotionStrategy.AUTOMATIC),
        ]

        assert [t.key for t in resolve_targets(environments, Selection.all())] == ["staging"]

    def test_all_without_eligible_environments(self):
        environments = [EnvironmentConfig("dev", "jx", DEV_URL, PromotionStrategy.NEVER)]

        with pytest.raises(NoEligibleEnvironments):
            resolve_targets(environments, Selection.all())

    def test_single_overrides_policy(self):
        targets = resolve_targets(create_environments(), Selection.single("qa"))

        assert [t.key for t in targets] == ["qa"]

    def test_single_unknown(self):
        with pytest.raises(UnknownEnvironment) as exc_info:
            resolve_targets(create_environments(), Selection.single("uat"))
        assert exc_info.value.names == ["uat"]

    def test_explicit_keeps_given_order(self):
        targets = resolve_targets(
            create_environments(), Selection.explicit(["production", "staging"])
        )

        assert [t.key for t in targets] == ["production", "staging"]

    def test_explicit_lists_all_unknown_names(self):
        with pytest.raises(UnknownEnvironment) as exc_info:
            resolve_targets(
                create_environments(), Selection.explicit(["uat", "staging", "perf"])
            )
        assert exc_info.value.names == ["uat", "perf"]
        assert "uat, perf" in str(exc_info.value)

    def test_explicit_empty(self):
        with pytest.raises(NoEligibleEnvironments):
            resolve_targets(create_environments(), Selection.explicit([]))


class TestLocateRepository:
    def test_own_repository(self):
        env = EnvironmentConfig("production", "jx-production", "https://github.com/org/prod")

        assert locate_repository(env, DEV_URL) == "https://github.com/org/prod"

    def test_falls_back_to_dev_repository(self):
        env = EnvironmentConfig("staging", "jx-staging")

        assert locate_repository(env, DEV_URL) == DEV_URL

    def test_unresolvable(self):
        env = EnvironmentConfig("staging", "jx-staging")

        with pytest.raises(UnresolvableRepository) as exc_info:
            locate_repository(env, "")
        assert "staging" in str(exc_info.value)


class TestRepoFullName:
    @pytest.mark.parametrize(
        "git_url,expected",
        [
            ("https://github.com/jx3-gitops-repositories/jx3-gke-terraform-vault", "jx3-gitops-repositories/jx3-gke-terraform-vault"),
            ("https://github.com/myorg/myapp.git", "myorg/myapp"),
            ("https://github.com/myorg/myapp/", "myorg/myapp"),
            ("git@github.com:myorg/myapp.git", "myorg/myapp"),
            ("https://gitlab.com/group/subgroup/repo", "group/subgroup/repo"),
        ],
    )
    def test_repo_full_name(self, git_url, expected):
        assert repo_full_name(git_url) == expected

    def test_invalid_url(self):
        with pytest.raises(ValueError):
            repo_full_name("not a url")
