from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable
from urllib.parse import urlparse

from pseudollama.config import ProxyConfig
from pseudollama.errors import BackendUnconfigured
from pseudollama.translator import codec_for
from pseudollama.types import (
    BackendKind,
    CanonicalChatRequest,
    RequestOrigin,
    Resolution,
)

LATEST_SUFFIX = ":latest"
REMOTE_PSEUDO_NAME = "remote"
CLOUD_VENDOR_PREFIX = "openrouter/"

BACKEND_TAGS: dict[str, BackendKind] = {
    "cloud": BackendKind.CLOUD,
    "openrouter": BackendKind.CLOUD,
    "local": BackendKind.LOCAL,
    "lmstudio": BackendKind.LOCAL,
}

RESERVED_NAMES: dict[BackendKind, frozenset[str]] = {
    BackendKind.CLOUD: frozenset(
        {
            "cloud",
            "openrouter",
            "openrouter-latest",
            "openrouter api",
            "remote pseudo model",
        }
    ),
    BackendKind.LOCAL: frozenset(
        {
            "local",
            "lmstudio",
            "lmstudio-latest",
            "lm studio",
        }
    ),
}


class ModelPolicy(str, Enum):
    VERBATIM = "verbatim"
    BACKEND_DEFAULT = "backend_default"
    NATIVE_IF_PLAUSIBLE = "native_if_plausible"


@dataclass(frozen=True, slots=True)
class RoutingContext:
    model: str
    base_name: str
    tag: BackendKind | None
    tagged_model: str | None
    from_web_ui: bool
    config: ProxyConfig

    @property
    def candidate_model(self) -> str:
        return self.tagged_model or self.base_name


@dataclass(frozen=True, slots=True)
class RoutingRule:
    name: str
    predicate: Callable[[RoutingContext], bool]
    outcome: Callable[[RoutingContext], BackendKind]
    model_policy: ModelPolicy


def _reserved_kind(ctx: RoutingContext) -> BackendKind | None:
    normalized = ctx.base_name.casefold()
    for kind, names in RESERVED_NAMES.items():
        if normalized in names:
            return kind
    return None


def _configured_default(ctx: RoutingContext) -> BackendKind:
    selected = ctx.config.selected_backend
    if ctx.config.descriptor(selected).usable:
        return selected
    if ctx.config.descriptor(selected.alternate).usable:
        return selected.alternate
    return selected


DEFAULT_RULES: tuple[RoutingRule, ...] = (
    RoutingRule(
        name="explicit_tag",
        predicate=lambda ctx: ctx.tag is not None and ctx.tagged_model is not None,
        outcome=lambda ctx: ctx.tag,  # type: ignore[arg-type,return-value]
        model_policy=ModelPolicy.VERBATIM,
    ),
    RoutingRule(
        name="vendor_prefix",
        predicate=lambda ctx: ctx.model.casefold().startswith(CLOUD_VENDOR_PREFIX),
        outcome=lambda ctx: BackendKind.CLOUD,
        model_policy=ModelPolicy.VERBATIM,
    ),
    RoutingRule(
        name="reserved_name",
        predicate=lambda ctx: _reserved_kind(ctx) is not None,
        outcome=lambda ctx: _reserved_kind(ctx),  # type: ignore[arg-type,return-value]
        model_policy=ModelPolicy.BACKEND_DEFAULT,
    ),
    RoutingRule(
        name="remote_pseudo",
        predicate=lambda ctx: (
            ctx.base_name.casefold() == REMOTE_PSEUDO_NAME and not ctx.from_web_ui
        ),
        outcome=lambda ctx: BackendKind.CLOUD,
        model_policy=ModelPolicy.BACKEND_DEFAULT,
    ),
    RoutingRule(
        name="configured_default",
        predicate=lambda ctx: True,
        outcome=_configured_default,
        model_policy=ModelPolicy.NATIVE_IF_PLAUSIBLE,
    ),
)


def strip_latest_suffix(model: str) -> str:
    if model.casefold().endswith(LATEST_SUFFIX):
        return model[: -len(LATEST_SUFFIX)]
    return model


def _split_backend_tag(model: str) -> tuple[BackendKind | None, str | None]:
    tag, sep, remainder = model.partition(":")
    if not sep:
        return None, None
    kind = BACKEND_TAGS.get(tag.strip().casefold())
    remainder = remainder.strip()
    if kind is None or not remainder or remainder.casefold() == "latest":
        return None, None
    return kind, remainder


class BackendResolver:
    def __init__(
        self,
        *,
        web_ui_hosts: Iterable[str] = (),
        rules: tuple[RoutingRule, ...] = DEFAULT_RULES,
    ) -> None:
        self._web_ui_hosts = {host.strip().lower() for host in web_ui_hosts if host.strip()}
        self.rules = rules

    def is_web_ui(self, origin: RequestOrigin | None) -> bool:
        if origin is None or not origin.referer or not self._web_ui_hosts:
            return False
        netloc = urlparse(origin.referer).netloc.lower()
        return netloc in self._web_ui_hosts

    def context(
        self,
        request: CanonicalChatRequest,
        origin: RequestOrigin | None,
        config: ProxyConfig,
    ) -> RoutingContext:
        model = request.model.strip()
        tag, tagged_model = _split_backend_tag(model)
        return RoutingContext(
            model=model,
            base_name=strip_latest_suffix(model),
            tag=tag,
            tagged_model=tagged_model,
            from_web_ui=self.is_web_ui(origin),
            config=config,
        )

    def match(self, ctx: RoutingContext) -> RoutingRule:
        for rule in self.rules:
            if rule.predicate(ctx):
                return rule
        raise LookupError(f"No routing rule matched model '{ctx.model}'.")

    def resolve(
        self,
        request: CanonicalChatRequest,
        origin: RequestOrigin | None,
        config: ProxyConfig,
        *,
        force: BackendKind | None = None,
    ) -> Resolution:
        ctx = self.context(request, origin, config)
        rule = self.match(ctx)
        matched_kind = rule.outcome(ctx)
        kind = force or matched_kind
        policy = rule.model_policy
        if force is not None and force is not matched_kind:
            policy = (
                ModelPolicy.NATIVE_IF_PLAUSIBLE
                if rule.name == "configured_default"
                else ModelPolicy.BACKEND_DEFAULT
            )

        descriptor = config.descriptor(kind)
        if not descriptor.usable:
            raise BackendUnconfigured(kind)

        if policy is ModelPolicy.VERBATIM:
            upstream_model = ctx.candidate_model
        elif policy is ModelPolicy.NATIVE_IF_PLAUSIBLE and codec_for(kind).accepts_model_id(
            ctx.candidate_model
        ):
            upstream_model = ctx.candidate_model
        else:
            upstream_model = descriptor.native_model_id

        return Resolution(
            kind=kind,
            descriptor=descriptor,
            upstream_model=upstream_model,
            rule=rule.name,
            requested_model=request.model,
            forced=force is not None,
            trace={
                "base_name": ctx.base_name,
                "from_web_ui": ctx.from_web_ui,
                "matched_kind": matched_kind.value,
                "model_policy": policy.value,
            },
        )
