# -*- coding: utf-8 -*-
"""
Motor de faturamento (lote).

Etapas:
  1) normalizar planilha      (normalizacao)
  2) identificar lojas         (clientes)
  3) classificar agendamentos  (validacao)
  4) duplicidades              (duplicatas)
  5) consolidar por loja       (consolidacao)
  6) conciliar com as NFS-e    (fiscal)

Tudo em memória e síncrono. Nada aqui grava em banco, planilha ou e-mail:
quem chama recebe o BatchResult e persiste/exporta como quiser.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from ciclo_providers import ClientPredicate, rollup_predicate
from clientes import MatchContext, match_records, suggest_similar
from consolidacao import ConsolidationResult, consolidate, contribution_amount, is_billable
import duplicatas
from duplicatas import DuplicateReport, detect_duplicates
from fiscal import FiscalRules, reconcile
from modelos import (
    STATUS_FATURAVEIS,
    Adjustment,
    CanonicalClient,
    FiscalDocument,
    Issue,
    IssueKind,
    RawRecord,
    ReconciliationResult,
    ValidationStatus,
)
from normalizacao import COLUNAS, br_money, normalizar_planilha, normalize_name
from validacao import BatchContext, classificar_lote

log = logging.getLogger(__name__)

SEM_CICLO = "Sem Ciclo"
LINHA_GERAL_ARQUIVO = "FATURAMENTO GERAL (ARQUIVO)"
LINHA_BRUTO_ORIGINAL = "BRUTO ORIGINAL"
LINHA_LIQUIDO_LOTE = "LÍQUIDO P/ LOTE"
LINHA_PENDENTES_CORRECAO = "PENDENTES CORREÇÃO"
LINHA_EXCLUIDOS = "EXCLUÍDOS"

# entram no "geral do arquivo" mesmo sem faturar neste lote
_STATUS_COM_VALOR = STATUS_FATURAVEIS | {ValidationStatus.WRONG_CYCLE}

# pendências refeitas a cada consolidação/conciliação
_ISSUES_CONSOLIDACAO = frozenset({
    IssueKind.AJUSTE_DUPLICADO, IssueKind.HIERARQUIA_INVALIDA, IssueKind.NF_AUSENTE,
    IssueKind.NF_DUPLICADA, IssueKind.NF_SEM_LOJA, IssueKind.BASE_NEGATIVA,
})


# ============================
# Log em arquivo
# ============================

class _FormatterPtBr(logging.Formatter):
    NIVEIS = {"WARNING": "AVISO", "ERROR": "ERRO", "CRITICAL": "ERRO"}

    def format(self, record: logging.LogRecord) -> str:
        original = record.levelname
        record.levelname = self.NIVEIS.get(original, original)
        try:
            return super().format(record)
        finally:
            record.levelname = original


def _app_log_paths(base_dir: str | None = None) -> tuple[str, str]:
    """logs/app/ ao lado do módulo (ou de base_dir): import.log e error.log."""
    pasta = Path(base_dir or Path(__file__).parent).resolve() / "logs" / "app"
    pasta.mkdir(parents=True, exist_ok=True)
    return str(pasta / "import.log"), str(pasta / "error.log")


def configurar_log(base_dir: str | None = None, nivel: int = logging.INFO) -> tuple[str, str]:
    """
    import.log = trilha do processamento; error.log = só avisos e erros.
    Pode ser chamada várias vezes: não duplica handler do mesmo arquivo.
    """
    imp_path, err_path = _app_log_paths(base_dir)
    root = logging.getLogger()
    root.setLevel(nivel)
    fmt = _FormatterPtBr("%(asctime)s | %(levelname)s | %(name)s | %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
    existentes = {getattr(h, "baseFilename", None) for h in root.handlers}
    for path, lvl in ((imp_path, nivel), (err_path, logging.WARNING)):
        if os.path.abspath(path) in existentes:
            continue
        h = logging.FileHandler(path, encoding="utf-8")
        h.setLevel(lvl)
        h.setFormatter(fmt)
        root.addHandler(h)
    return imp_path, err_path


# ============================
# Relatórios do lote
# ============================

@dataclass
class UnregisteredStore:
    store_name_raw: str
    tax_id: str = ""
    record_count: int = 0
    gross_total: Decimal = Decimal("0")
    suggestions: tuple[str, ...] = ()


@dataclass
class ConciliationReport:
    unregistered: list[UnregisteredStore] = field(default_factory=list)
    absent_clients: list[CanonicalClient] = field(default_factory=list)


def conciliation_report(records: Iterable[RawRecord], clients: MatchContext, ctx: BatchContext) -> ConciliationReport:
    """Lojas da planilha sem cadastro + clientes dos ciclos escolhidos que não vieram no lote."""
    rep = ConciliationReport()
    por_loja: dict[str, UnregisteredStore] = {}
    vistos: set[str] = set()
    for rec in records:
        if rec.client_id is not None:
            vistos.add(rec.client_id)
            continue
        if rec.is_removed or rec.status not in _STATUS_COM_VALOR:
            continue
        chave = normalize_name(rec.store_name_raw)
        item = por_loja.get(chave)
        if item is None:
            sug = rec.match.candidates or tuple(suggest_similar(rec.store_name_raw, clients))
            item = por_loja[chave] = UnregisteredStore(rec.store_name_raw, rec.tax_id_raw or "", suggestions=sug)
        item.record_count += 1
        item.gross_total += rec.gross_amount
    rep.unregistered = list(por_loja.values())

    if ctx.selected_cycle_ids:
        rep.absent_clients = [
            c for c in clients.clients
            if c.billing_cycle_id in ctx.selected_cycle_ids and c.id not in vistos
        ]
    return rep


@dataclass
class SummaryLine:
    label: str
    total: Decimal = Decimal("0")
    company_count: int = 0


@dataclass
class FinancialSummary:
    lines: list[SummaryLine] = field(default_factory=list)
    billed_companies: int = 0
    rejected_companies: int = 0

    def line(self, label: str) -> Optional[SummaryLine]:
        return next((ln for ln in self.lines if ln.label == label), None)

    def dataframe(self) -> pd.DataFrame:
        df = pd.DataFrame(
            [{"ciclo": ln.label, "total": float(ln.total), "empresas": ln.company_count} for ln in self.lines],
            columns=["ciclo", "total", "empresas"],
        )
        bruto = self.line(LINHA_BRUTO_ORIGINAL)
        base = float(bruto.total) if bruto is not None else 0.0
        # participação sobre o bruto original; bruto zerado -> vazio
        with np.errstate(divide="ignore", invalid="ignore"):
            part = df["total"].to_numpy(dtype=float) / base * 100
        df["participacao"] = pd.Series(part, index=df.index).replace([np.inf, -np.inf], np.nan)
        return df


def _company_key(rec: RawRecord) -> str:
    return rec.client_id or rec.external_ref or rec.store_name_raw


def financial_summary(records: Iterable[RawRecord], clients: MatchContext) -> FinancialSummary:
    por_ciclo: dict[str, SummaryLine] = {}
    empresas_ciclo: dict[str, set[str]] = {}
    totais = {k: Decimal("0") for k in (LINHA_GERAL_ARQUIVO, LINHA_BRUTO_ORIGINAL, LINHA_LIQUIDO_LOTE,
                                        LINHA_PENDENTES_CORRECAO, LINHA_EXCLUIDOS)}
    empresas: dict[str, set[str]] = {k: set() for k in totais}
    faturadas: set[str] = set()
    rejeitadas: set[str] = set()

    for rec in records:
        key = _company_key(rec)
        totais[LINHA_BRUTO_ORIGINAL] += rec.gross_amount
        empresas[LINHA_BRUTO_ORIGINAL].add(key)

        if rec.is_removed:
            totais[LINHA_EXCLUIDOS] += rec.gross_amount
            empresas[LINHA_EXCLUIDOS].add(key)
            rejeitadas.add(key)
            continue

        if rec.status in STATUS_FATURAVEIS:
            faturadas.add(key)
        else:
            rejeitadas.add(key)

        if rec.status not in _STATUS_COM_VALOR:
            continue
        val = contribution_amount(rec)
        totais[LINHA_GERAL_ARQUIVO] += val
        empresas[LINHA_GERAL_ARQUIVO].add(key)
        if rec.status == ValidationStatus.WRONG_CYCLE:
            continue

        client = clients.get(rec.client_id)
        ciclo = (client.billing_cycle_name if client is not None else None) or SEM_CICLO
        ln = por_ciclo.setdefault(ciclo, SummaryLine(ciclo))
        ln.total += val
        empresas_ciclo.setdefault(ciclo, set()).add(key)

        totais[LINHA_LIQUIDO_LOTE] += val
        empresas[LINHA_LIQUIDO_LOTE].add(key)
        if rec.status == ValidationStatus.CORRECTION:
            totais[LINHA_PENDENTES_CORRECAO] += val
            empresas[LINHA_PENDENTES_CORRECAO].add(key)

    for ciclo, ln in por_ciclo.items():
        ln.company_count = len(empresas_ciclo[ciclo])

    lines = list(por_ciclo.values())
    for label in (LINHA_GERAL_ARQUIVO, LINHA_BRUTO_ORIGINAL, LINHA_LIQUIDO_LOTE,
                  LINHA_PENDENTES_CORRECAO, LINHA_EXCLUIDOS):
        if label == LINHA_PENDENTES_CORRECAO and totais[label] <= 0:
            continue
        lines.append(SummaryLine(label, totais[label], len(empresas[label])))
    return FinancialSummary(lines, len(faturadas), len(rejeitadas))


@dataclass
class StatusCounts:
    excluded: int = 0
    out_of_period: int = 0
    wrong_cycle: int = 0
    corrections: int = 0
    divergent: int = 0  # faturável mas sem loja identificada


def status_counts(records: Iterable[RawRecord]) -> StatusCounts:
    c = StatusCounts()
    for rec in records:
        if rec.is_removed:
            c.excluded += 1
            continue
        st = rec.status
        if st == ValidationStatus.OUT_OF_PERIOD:
            c.out_of_period += 1
        elif st == ValidationStatus.WRONG_CYCLE:
            c.wrong_cycle += 1
        elif st == ValidationStatus.CORRECTION:
            c.corrections += 1
        if st in STATUS_FATURAVEIS and rec.client_id is None:
            c.divergent += 1
    return c


# ============================
# Exportação (DataFrames para quem for gravar)
# ============================

def _f(v: Optional[Decimal]) -> Optional[float]:
    return float(v) if v is not None else None


def records_dataframe(records: Iterable[RawRecord]) -> pd.DataFrame:
    cols = ["linha", "profissional", "loja", "cliente_id", "vinculo", "vaga", "inicio", "termino",
            "ref_agendamento", "valor_bruto", "fracao_hora", "status", "valor_manual", "valor_sugerido",
            "fracao_sugerida", "termino_sugerido", "valor_faturado", "motivo_exclusao"]
    rows = []
    for r in records:
        rows.append({
            "linha": r.row_number,
            "profissional": r.professional_name,
            "loja": r.store_name_raw,
            "cliente_id": r.client_id,
            "vinculo": r.match.tier,
            "vaga": r.role_label,
            "inicio": r.start_time,
            "termino": r.end_time,
            "ref_agendamento": r.external_ref,
            "valor_bruto": float(r.gross_amount),
            "fracao_hora": float(r.duration_hours),
            "status": r.status.value,
            "valor_manual": _f(r.manual_value),
            "valor_sugerido": _f(r.suggested_amount),
            "fracao_sugerida": _f(r.suggested_duration),
            "termino_sugerido": r.suggested_end_time,
            "valor_faturado": float(contribution_amount(r)) if is_billable(r) else 0.0,
            "motivo_exclusao": r.exclusion_reason,
        })
    return pd.DataFrame(rows, columns=cols)


def results_dataframe(results: Iterable[ReconciliationResult], clients: MatchContext | None = None) -> pd.DataFrame:
    cols = ["cliente_id", "cliente", "cnpj", "nf_numero", "situacao", "agendamentos", "filiais",
            "bruto", "acrescimos", "descontos", "base", "nf", "nc", "irrf", "irrf_estimado",
            "sem_nf", "boleto"]
    rows = []
    for r in results:
        cli = clients.get(r.client_id) if clients is not None else None
        c = r.consolidated
        rows.append({
            "cliente_id": r.client_id,
            "cliente": cli.display_name if cli is not None else "",
            "cnpj": cli.tax_id if cli is not None else "",
            "nf_numero": r.fiscal_document.document_number if r.fiscal_document is not None else "",
            "situacao": r.match_state.value,
            "agendamentos": c.record_count,
            "filiais": len(c.children),
            "bruto": float(c.gross_total),
            "acrescimos": float(c.credits_total),
            "descontos": float(c.debits_total),
            "base": float(r.base_amount),
            "nf": float(r.invoice_amount),
            "nc": float(r.credit_note_amount),
            "irrf": float(r.withholding_tax),
            "irrf_estimado": r.withholding_estimated,
            "sem_nf": r.invoice_suppressed,
            "boleto": float(r.final_payable),
        })
    return pd.DataFrame(rows, columns=cols)


# ============================
# Pipeline
# ============================

@dataclass
class BatchResult:
    records: list[RawRecord]
    clients: MatchContext
    context: BatchContext
    duplicates: DuplicateReport
    consolidation: ConsolidationResult
    reconciliation: list[ReconciliationResult] = field(default_factory=list)
    conciliation: ConciliationReport = field(default_factory=ConciliationReport)
    summary: FinancialSummary = field(default_factory=FinancialSummary)
    skipped: int = 0
    issues: list[Issue] = field(default_factory=list)

    @property
    def status_counts(self) -> StatusCounts:
        return status_counts(self.records)

    @property
    def consumed_adjustments(self) -> list[Adjustment]:
        return self.consolidation.consumed_adjustments


def _log_issues(issues: Sequence[Issue]) -> None:
    for it in issues:
        log.debug("[%s] linha=%s loja=%s cliente=%s: %s",
                  it.kind.value, it.row_number, it.store_name, it.client_id, it.message)
    if issues:
        por_tipo: dict[str, int] = {}
        for it in issues:
            por_tipo[it.kind.value] = por_tipo.get(it.kind.value, 0) + 1
        log.warning("Pendências do lote: %s", ", ".join(f"{k}={v}" for k, v in sorted(por_tipo.items())))


def _consolidar_e_conciliar(
    records: list[RawRecord],
    clients: MatchContext,
    adjustments: Iterable[Adjustment],
    fiscal_documents: Optional[Iterable[FiscalDocument]],
    rules: FiscalRules,
    rollup: Optional[ClientPredicate],
    invoice_suppressed: Iterable[str],
) -> tuple[ConsolidationResult, list[ReconciliationResult], list[Issue]]:
    cons = consolidate(records, adjustments, clients, rollup)
    issues = list(cons.issues)
    recon: list[ReconciliationResult] = []
    if fiscal_documents is not None:
        recon, fis_issues = reconcile(cons.billing(), fiscal_documents, clients, rules, invoice_suppressed)
        issues.extend(fis_issues)
    return cons, recon, issues


def processar_lote(
    headers: Iterable[str],
    rows: Iterable[Mapping[str, Any]],
    clients: Iterable[CanonicalClient],
    ctx: BatchContext,
    adjustments: Iterable[Adjustment] = (),
    fiscal_documents: Optional[Iterable[FiscalDocument]] = None,
    rules: FiscalRules = FiscalRules(),
    rollup: Optional[ClientPredicate] = rollup_predicate,
    invoice_suppressed: Iterable[str] = (),
    auto_resolve_exact: bool = True,
    aliases: Mapping[str, list[str]] = COLUNAS,
) -> BatchResult:
    """
    Roda as seis etapas. Só ErroConfiguracao (coluna de valor ausente) aborta;
    todo o resto vira Issue no resultado.
    fiscal_documents=None pula a conciliação fiscal (etapa feita depois, com as notas emitidas).
    rollup=None desliga o agrupamento na loja-mãe.
    """
    norm = normalizar_planilha(headers, rows, aliases)
    records = norm.records
    issues: list[Issue] = list(norm.issues)

    mctx = MatchContext.build(clients)
    issues.extend(match_records(records, mctx))
    issues.extend(classificar_lote(records, mctx, ctx))

    dup = detect_duplicates(records)
    if auto_resolve_exact:
        duplicatas.auto_resolve_exact(dup)
    else:
        duplicatas.flag_exact_duplicates(dup)

    adjustments = list(adjustments)
    cons, recon, etapa_issues = _consolidar_e_conciliar(
        records, mctx, adjustments, fiscal_documents, rules, rollup, invoice_suppressed
    )
    issues.extend(etapa_issues)

    res = BatchResult(
        records=records,
        clients=mctx,
        context=ctx,
        duplicates=dup,
        consolidation=cons,
        reconciliation=recon,
        conciliation=conciliation_report(records, mctx, ctx),
        summary=financial_summary(records, mctx),
        skipped=norm.skipped,
        issues=issues,
    )
    _log_issues(issues)
    liq = res.summary.line(LINHA_LIQUIDO_LOTE)
    log.info("Lote processado: %d registros, %d lojas, líquido %s",
             len(records), len(cons.records), br_money(liq.total if liq else Decimal("0")))
    return res


def reconciliar_lote(
    batch: BatchResult,
    adjustments: Iterable[Adjustment] = (),
    fiscal_documents: Optional[Iterable[FiscalDocument]] = None,
    rules: FiscalRules = FiscalRules(),
    rollup: Optional[ClientPredicate] = rollup_predicate,
    invoice_suppressed: Iterable[str] = (),
) -> BatchResult:
    """
    Depois das edições do operador (exclusões, vínculos manuais, valores):
    refaz consolidação, conciliação e resumos sem reler a planilha.
    Pendências de leitura/match do lote original são mantidas.
    """
    issues = [it for it in batch.issues if it.kind not in _ISSUES_CONSOLIDACAO]
    cons, recon, etapa_issues = _consolidar_e_conciliar(
        batch.records, batch.clients, adjustments, fiscal_documents, rules, rollup, invoice_suppressed
    )
    issues.extend(etapa_issues)
    out = replace(
        batch,
        consolidation=cons,
        reconciliation=recon,
        conciliation=conciliation_report(batch.records, batch.clients, batch.context),
        summary=financial_summary(batch.records, batch.clients),
        issues=issues,
    )
    _log_issues(etapa_issues)
    return out
