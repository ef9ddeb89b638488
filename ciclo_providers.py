# -*- coding: utf-8 -*-
"""
Regras específicas por ciclo de faturamento.

Objetivo:
- Isolar o que cada rede/ciclo tem de diferente (consolidação na loja-mãe,
  IRRF estimado, dedução no boleto) sem espalhar `if` pelo motor.
- Ciclo novo sem regra própria cai no BaseCycleRule (neutro).
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from modelos import CanonicalClient
from normalizacao import normalize_name

ClientPredicate = Callable[[CanonicalClient], bool]


@dataclass(frozen=True)
class BaseCycleRule:
    code: str
    rollup: bool = False               # filiais faturadas pela loja-mãe
    withholding_fallback: bool = False  # sem NF -> IRRF estimado sobre a NF
    deduct_withholding: bool = False    # boleto final = base - IRRF


@dataclass(frozen=True)
class LetaRule(BaseCycleRule):
    code: str = "LETA"
    rollup: bool = True


@dataclass(frozen=True)
class NordestaoRule(BaseCycleRule):
    code: str = "NORDESTAO"
    withholding_fallback: bool = True
    deduct_withholding: bool = True


def _chave(nome: Optional[str]) -> str:
    return normalize_name(nome).upper()


def get_cycle_rule(cycle_name: Optional[str]) -> BaseCycleRule:
    c = _chave(cycle_name)
    if "LETA" in c:
        return LetaRule()
    if "NORDESTAO" in c:
        return NordestaoRule()
    return BaseCycleRule(code=c)


def rule_for_client(client: CanonicalClient) -> BaseCycleRule:
    rule = get_cycle_rule(client.billing_cycle_name)
    # rede LETA às vezes vem sem ciclo no cadastro, só na razão social
    if not rule.rollup and "LETA" in _chave(client.legal_name).split():
        return LetaRule()
    return rule


def rollup_predicate(client: CanonicalClient) -> bool:
    return rule_for_client(client).rollup


def withholding_predicate(client: CanonicalClient) -> bool:
    return rule_for_client(client).withholding_fallback


def deduction_predicate(client: CanonicalClient) -> bool:
    return rule_for_client(client).deduct_withholding
