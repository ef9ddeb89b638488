# -*- coding: utf-8 -*-
"""
Identificação da loja (cliente canônico) de cada agendamento.

Cascata, do mais estrito ao mais frouxo:
  1) CNPJ da planilha == CNPJ do cliente
  2) nome == nome na plataforma de faturamento (Conta Azul)
  3) nome == razão social / nome fantasia / nome curto
  4) nome contido (ou que contém) algum nome do cliente; empate -> não chuta,
     devolve os candidatos para decisão manual
"""
from __future__ import annotations

import difflib
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, Mapping

from modelos import CanonicalClient, Issue, IssueKind, MatchResult, RawRecord
from normalizacao import normalize_name, normalize_tax_id

log = logging.getLogger(__name__)

SCORE_EXATO = 1000


def _client_names(c: CanonicalClient) -> tuple[str, ...]:
    nomes = (c.billing_platform_name, c.trade_name, c.legal_name, c.short_name)
    return tuple(n for n in (normalize_name(x) for x in nomes) if n)


@dataclass(frozen=True)
class MatchContext:
    """Clientes ativos + índices derivados (somente leitura, montado uma vez por lote)."""
    clients: tuple[CanonicalClient, ...]
    by_id: Mapping[str, CanonicalClient]
    by_tax_id: Mapping[str, CanonicalClient]
    by_platform_name: Mapping[str, CanonicalClient]
    by_alt_name: Mapping[str, CanonicalClient]
    names: tuple[tuple[CanonicalClient, tuple[str, ...]], ...]

    @classmethod
    def build(cls, clients: Iterable[CanonicalClient]) -> "MatchContext":
        ativos = tuple(c for c in clients if c.active)
        by_id: dict[str, CanonicalClient] = {}
        by_tax: dict[str, CanonicalClient] = {}
        by_plat: dict[str, CanonicalClient] = {}
        by_alt: dict[str, CanonicalClient] = {}
        for c in ativos:
            by_id.setdefault(c.id, c)
            tax = normalize_tax_id(c.tax_id)
            if tax:
                if tax in by_tax and by_tax[tax].id != c.id:
                    log.warning("CNPJ %s repetido nos clientes %s e %s; mantendo o primeiro",
                                tax, by_tax[tax].id, c.id)
                by_tax.setdefault(tax, c)
            plat = normalize_name(c.billing_platform_name)
            if plat:
                by_plat.setdefault(plat, c)
            for n in (c.legal_name, c.trade_name, c.short_name):
                nn = normalize_name(n)
                if nn:
                    by_alt.setdefault(nn, c)
        return cls(
            clients=ativos,
            by_id=MappingProxyType(by_id),
            by_tax_id=MappingProxyType(by_tax),
            by_platform_name=MappingProxyType(by_plat),
            by_alt_name=MappingProxyType(by_alt),
            names=tuple((c, _client_names(c)) for c in ativos),
        )

    def get(self, client_id: str | None) -> CanonicalClient | None:
        if client_id is None:
            return None
        return self.by_id.get(client_id)


def _score(nome: str, db_name: str) -> int:
    if nome == db_name:
        return len(db_name) + SCORE_EXATO
    if db_name in nome or nome in db_name:
        return min(len(db_name), len(nome))
    return -1


def match_client(record: RawRecord, ctx: MatchContext) -> MatchResult:
    """Função pura: mesmo registro + mesmos clientes -> mesmo resultado."""
    tax = normalize_tax_id(record.tax_id_raw)
    if tax:
        c = ctx.by_tax_id.get(tax)
        if c is not None:
            return MatchResult(c.id, tier="cnpj")

    nome = normalize_name(record.store_name_raw)
    if not nome:
        return MatchResult()

    c = ctx.by_platform_name.get(nome)
    if c is not None:
        return MatchResult(c.id, tier="plataforma")

    c = ctx.by_alt_name.get(nome)
    if c is not None:
        return MatchResult(c.id, tier="nome")

    scored: list[tuple[CanonicalClient, int]] = []
    for cli, nomes in ctx.names:
        s = max((_score(nome, n) for n in nomes), default=-1)
        if s >= 0:
            scored.append((cli, s))
    if not scored:
        return MatchResult()
    if len(scored) == 1:
        return MatchResult(scored[0][0].id, tier="parcial")

    best = max(s for _, s in scored)
    tied = [cli for cli, s in scored if s == best]
    if len(tied) == 1:
        return MatchResult(tied[0].id, tier="parcial")
    return MatchResult(None, candidates=tuple(cli.id for cli in tied), tier="parcial")


def suggest_similar(store_name: str, ctx: MatchContext, limit: int = 3, cutoff: float = 0.8) -> list[str]:
    """Sugestões por similaridade para loja sem nenhum candidato (ids de cliente)."""
    nome = normalize_name(store_name)
    if not nome:
        return []
    por_nome: dict[str, str] = {}
    for cli, nomes in ctx.names:
        for n in nomes:
            por_nome.setdefault(n, cli.id)
    out: list[str] = []
    for n in difflib.get_close_matches(nome, list(por_nome), n=limit * 2, cutoff=cutoff):
        cid = por_nome[n]
        if cid not in out:
            out.append(cid)
    return out[:limit]


def match_records(records: Iterable[RawRecord], ctx: MatchContext, keep_manual: bool = True) -> list[Issue]:
    """Aplica match_client em todos os registros; devolve pendências por loja."""
    issues: list[Issue] = []
    avisadas: set[str] = set()
    n_ok = n_amb = n_sem = 0
    for rec in records:
        if keep_manual and rec.match.tier == "manual":
            n_ok += 1
            continue
        rec.match = match_client(rec, ctx)
        if rec.match.matched:
            n_ok += 1
            continue
        chave = normalize_name(rec.store_name_raw)
        if rec.match.ambiguous:
            n_amb += 1
            if chave not in avisadas:
                avisadas.add(chave)
                issues.append(Issue(
                    IssueKind.MATCH_AMBIGUO,
                    f"Loja '{rec.store_name_raw}' empatou entre {len(rec.match.candidates)} clientes",
                    row_number=rec.row_number, store_name=rec.store_name_raw,
                ))
        else:
            n_sem += 1
            if chave not in avisadas:
                avisadas.add(chave)
                issues.append(Issue(
                    IssueKind.LOJA_NAO_CADASTRADA,
                    f"Loja '{rec.store_name_raw}' não encontrada no cadastro",
                    row_number=rec.row_number, store_name=rec.store_name_raw,
                ))
    log.info("Match de lojas: %d identificados, %d ambíguos, %d sem cadastro", n_ok, n_amb, n_sem)
    return issues
