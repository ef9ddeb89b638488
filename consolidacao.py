# -*- coding: utf-8 -*-
"""
Consolidação por loja: soma dos agendamentos faturáveis + acréscimos/descontos
pendentes + (opcional) agrupamento das filiais na loja-mãe.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Iterable, Optional

from ciclo_providers import ClientPredicate
from clientes import MatchContext
from modelos import (
    STATUS_FATURAVEIS,
    Adjustment,
    AdjustmentKind,
    ConsolidatedStoreRecord,
    Issue,
    IssueKind,
    RawRecord,
    ValidationStatus,
)
from normalizacao import br_money

log = logging.getLogger(__name__)


def contribution_amount(rec: RawRecord) -> Decimal:
    """Valor que o agendamento leva para o consolidado."""
    if (
        rec.status == ValidationStatus.CORRECTION
        and not rec.manually_overridden
        and rec.suggested_amount is not None
    ):
        return rec.suggested_amount
    if rec.manual_value is not None:
        return rec.manual_value
    return rec.gross_amount


def is_billable(rec: RawRecord) -> bool:
    return rec.client_id is not None and rec.status in STATUS_FATURAVEIS


@dataclass
class ConsolidationResult:
    # só o nível que fatura (filiais agrupadas ficam em .children da mãe)
    records: dict[str, ConsolidatedStoreRecord] = field(default_factory=dict)
    consumed_adjustments: list[Adjustment] = field(default_factory=list)
    issues: list[Issue] = field(default_factory=list)

    def billing(self) -> list[ConsolidatedStoreRecord]:
        return list(self.records.values())

    def all_records(self) -> list[ConsolidatedStoreRecord]:
        out: list[ConsolidatedStoreRecord] = []
        for r in self.records.values():
            out.append(r)
            out.extend(r.children)
        return out

    @property
    def gross_total(self) -> Decimal:
        return sum((r.gross_total for r in self.records.values()), Decimal("0"))


def _aplicar_ajustes(
    lojas: dict[str, ConsolidatedStoreRecord], adjustments: Iterable[Adjustment], issues: list[Issue]
) -> list[Adjustment]:
    vistos: set[str] = set()
    consumidos: list[Adjustment] = []
    for adj in adjustments:
        if adj.id in vistos:
            issues.append(Issue(
                IssueKind.AJUSTE_DUPLICADO,
                f"Ajuste {adj.id} repetido na entrada; aplicado uma vez só",
                client_id=adj.client_id,
            ))
            continue
        vistos.add(adj.id)
        if adj.applied:
            continue
        loja = lojas.get(adj.client_id)
        if loja is None:
            # cliente fora deste lote: ajuste segue pendente
            continue
        if adj.kind == AdjustmentKind.CREDIT:
            loja.credits_total += adj.amount
        else:
            loja.debits_total += adj.amount
        loja.adjustment_ids.append(adj.id)
        consumidos.append(adj)
        log.debug("Ajuste %s (%s %s) aplicado em %s", adj.id, adj.kind.value, br_money(adj.amount), adj.client_id)
    return consumidos


def _mae_valida(
    cid: str, clients: MatchContext, rollup: ClientPredicate, issues: list[Issue]
) -> Optional[str]:
    client = clients.get(cid)
    if client is None or not client.parent_entity_id or not rollup(client):
        return None
    mae_id = client.parent_entity_id
    if mae_id == cid:
        issues.append(Issue(IssueKind.HIERARQUIA_INVALIDA,
                            f"{client.display_name} aponta para si mesma como loja-mãe", client_id=cid))
        return None
    mae = clients.get(mae_id)
    if mae is None:
        issues.append(Issue(IssueKind.HIERARQUIA_INVALIDA,
                            f"Loja-mãe {mae_id} de {client.display_name} não está no cadastro ativo", client_id=cid))
        return None
    if mae.parent_entity_id and mae.parent_entity_id != mae.id:
        issues.append(Issue(IssueKind.HIERARQUIA_INVALIDA,
                            f"Loja-mãe {mae.display_name} também tem mãe; só um nível é aceito", client_id=cid))
        return None
    return mae_id


def _agrupar_na_mae(
    lojas: dict[str, ConsolidatedStoreRecord], clients: MatchContext, rollup: ClientPredicate, issues: list[Issue]
) -> dict[str, ConsolidatedStoreRecord]:
    destino = {cid: _mae_valida(cid, clients, rollup, issues) for cid in lojas}
    out: dict[str, ConsolidatedStoreRecord] = {}
    for cid, loja in lojas.items():
        if destino[cid] is None:
            out.setdefault(cid, loja)
    for cid, loja in lojas.items():
        mae_id = destino[cid]
        if mae_id is None:
            continue
        # mãe sem agendamento no lote entra zerada só para receber as filiais
        mae = out.setdefault(mae_id, ConsolidatedStoreRecord(client_id=mae_id))
        mae.gross_total += loja.gross_total
        mae.credits_total += loja.credits_total
        mae.debits_total += loja.debits_total
        mae.record_count += loja.record_count
        mae.adjustment_ids.extend(loja.adjustment_ids)
        loja.folded_into = mae_id
        mae.children.append(loja)
    return out


def consolidate(
    records: Iterable[RawRecord],
    adjustments: Iterable[Adjustment],
    clients: MatchContext,
    rollup: ClientPredicate | None = None,
) -> ConsolidationResult:
    """Não altera registros nem ajustes de entrada: rodar de novo dá o mesmo resultado."""
    res = ConsolidationResult()
    lojas: dict[str, ConsolidatedStoreRecord] = {}
    for rec in records:
        if not is_billable(rec):
            continue
        loja = lojas.setdefault(rec.client_id, ConsolidatedStoreRecord(client_id=rec.client_id))
        loja.gross_total += contribution_amount(rec)
        loja.record_count += 1

    res.consumed_adjustments = _aplicar_ajustes(lojas, adjustments, res.issues)

    if rollup is not None:
        res.records = _agrupar_na_mae(lojas, clients, rollup, res.issues)
    else:
        res.records = lojas

    n_filiais = sum(len(r.children) for r in res.records.values())
    log.info("Consolidação: %d lojas faturáveis (%d filiais agrupadas), %d ajustes aplicados, bruto %s",
             len(res.records), n_filiais, len(res.consumed_adjustments), br_money(res.gross_total))
    return res


def mark_applied(adjustments: Iterable[Adjustment]) -> list[Adjustment]:
    """Cópias com applied=True para o chamador gravar; ajuste aplicado não volta."""
    return [replace(a, applied=True) for a in adjustments]
