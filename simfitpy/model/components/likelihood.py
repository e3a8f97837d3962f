# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Likelihood terms and data field declarations."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

import torch

from simfitpy.model.components.distributions import Distribution, MultivariateNormal


@dataclass(frozen=True)
class Field:
    """A data field the model requires.

    :param name: Name of the response or predictor in the dataset
    :param shape: Expected shape. The first entry is normally ``"n"``, the
        number of observations; named entries bind model dimensions.
    :param allow_missing: Whether the field may contain unobserved entries.
        Fields that feed lagged predictors must be fully observed.
    """

    name: str
    shape: tuple[Union[int, str], ...] = ("n",)
    allow_missing: bool = True


class Likelihood:
    """A term of the log density scoring ``response[start:stop]``.

    The response is either a data field or a parameter. When it is a
    parameter, the term is a structural prior (for example, the transition
    density of a latent state process).

    The arguments of `distribution` must broadcast against the scored slice of
    the response, not the full response.

    :param response: Name of the data field or parameter being scored
    :type response: str
    :param distribution: Distribution of the response
    :type distribution: Distribution
    :param start: First scored row. Defaults to 0.
    :type start: int
    :param stop: One past the last scored row. Defaults to None (the end).
    :type stop: Optional[int]
    """

    def __init__(
        self,
        response: str,
        distribution: Distribution,
        start: int = 0,
        stop: Optional[int] = None,
    ):
        if start < 0 or (stop is not None and stop <= start):
            raise ValueError("Likelihood rows must satisfy 0 <= start < stop.")
        self.response = response
        self.distribution = distribution
        self.start = start
        self.stop = stop

    def __repr__(self) -> str:
        rows = (
            ""
            if self.start == 0 and self.stop is None
            else f"[{self.start}:{'' if self.stop is None else self.stop}]"
        )
        return f"{self.response}{rows} ~ {self.distribution}"

    def log_prob(
        self,
        params: dict[str, torch.Tensor],
        data: dict[str, torch.Tensor],
        masks: dict[str, torch.Tensor],
    ) -> torch.Tensor:
        """Summed log density of the observed entries of the response.

        :param params: Constrained parameters and transformed parameters
        :type params: dict[str, torch.Tensor]
        :param data: Data tensors. Missing entries may hold any finite value.
        :type data: dict[str, torch.Tensor]
        :param masks: Observation masks of partially observed responses. Fully
            observed responses have no entry.
        :type masks: dict[str, torch.Tensor]

        :returns: Scalar log density
        :rtype: torch.Tensor
        """
        value = params[self.response] if self.response in params else data[self.response]
        rows = slice(self.start, self.stop)
        value = value[rows]
        distribution = self.distribution.build(params, data)

        # Fully observed
        if (mask := masks.get(self.response)) is None:
            return distribution.log_prob(value).sum()
        mask = mask[rows]

        # Multivariate normal events are marginalized onto observed coordinates
        if isinstance(self.distribution, MultivariateNormal):
            return self.distribution.marginal_log_prob(distribution, value, mask)

        # Other events are scored only when every coordinate is observed
        if self.distribution.EVENT_DIM > 0:
            mask = mask.all(dim=-1)
            value = torch.where(mask[..., None], value, self.distribution.fill(value))
        else:
            value = torch.where(mask, value, self.distribution.fill(value))

        # Unobserved entries hold a value in the support so that gradients stay
        # finite, then contribute exactly zero
        log_prob = distribution.log_prob(value)
        return torch.where(mask, log_prob, torch.zeros_like(log_prob)).sum()
