# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2024-2025 Creditline Contributors
"""Token usage payload reported by the model runtime."""

from __future__ import annotations

from typing import Any, Mapping

from pydantic import AliasChoices, BaseModel, Field, ValidationError, model_validator

from creditline_core.wallet.errors import InvalidUsageDataError


def _count(snake: str, camel: str) -> Any:
    return Field(default=None, ge=0, validation_alias=AliasChoices(snake, camel))


class UsageMetrics(BaseModel):
    """
    Token counts for one model call.

    Accepts the runtime's camelCase keys (`totalInputTokens`, `inputCachedTokens`,
    `outputReasoningTokens`, ...) as well as snake_case. Totals missing from the
    payload are derived from their parts.
    """

    model_config = {"extra": "ignore"}

    total_input_tokens: int | None = _count("total_input_tokens", "totalInputTokens")
    input_text_tokens: int | None = _count("input_text_tokens", "inputTextTokens")
    input_cached_tokens: int | None = _count("input_cached_tokens", "inputCachedTokens")
    input_cache_miss_tokens: int | None = _count("input_cache_miss_tokens", "inputCacheMissTokens")

    total_output_tokens: int | None = _count("total_output_tokens", "totalOutputTokens")
    output_text_tokens: int | None = _count("output_text_tokens", "outputTextTokens")
    output_reasoning_tokens: int | None = _count("output_reasoning_tokens", "outputReasoningTokens")

    total_tokens: int | None = _count("total_tokens", "totalTokens")

    @model_validator(mode="after")
    def _derive_totals(self) -> "UsageMetrics":
        if self.total_input_tokens is None:
            parts = [self.input_text_tokens, self.input_cached_tokens, self.input_cache_miss_tokens]
            if any(p is not None for p in parts):
                self.total_input_tokens = sum(p or 0 for p in parts)
        if self.total_output_tokens is None:
            parts = [self.output_text_tokens, self.output_reasoning_tokens]
            if any(p is not None for p in parts):
                self.total_output_tokens = sum(p or 0 for p in parts)
        if self.total_tokens is None:
            parts = [self.total_input_tokens, self.total_output_tokens]
            if any(p is not None for p in parts):
                self.total_tokens = sum(p or 0 for p in parts)
        if not self.total_tokens:
            raise ValueError("usage must report a positive token total")
        return self

    @property
    def input_tokens(self) -> int:
        return self.total_input_tokens or 0

    @property
    def output_tokens(self) -> int:
        return self.total_output_tokens or 0

    @property
    def cached_input_tokens(self) -> int:
        return self.input_cached_tokens or 0

    @property
    def reasoning_tokens(self) -> int:
        return self.output_reasoning_tokens or 0

    def to_payload(self) -> dict[str, int]:
        """Dict stored on the ledger entry; unset counts are omitted."""
        return self.model_dump(exclude_none=True)


def parse_usage_metrics(raw: UsageMetrics | Mapping[str, Any] | None) -> UsageMetrics:
    """Validate a raw usage payload, raising InvalidUsageDataError on bad input."""
    if isinstance(raw, UsageMetrics):
        return raw
    if raw is None:
        raise InvalidUsageDataError("usage metrics are required")
    try:
        return UsageMetrics.model_validate(dict(raw))
    except ValidationError as exc:
        raise InvalidUsageDataError(f"invalid usage metrics: {exc.errors()[0].get('msg', exc)}") from exc
    except (TypeError, ValueError) as exc:
        raise InvalidUsageDataError(f"invalid usage metrics: {exc}") from exc
