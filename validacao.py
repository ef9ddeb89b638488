# -*- coding: utf-8 -*-
"""
Classificação dos agendamentos (status de validação).

Precedência fixa, a primeira regra que desqualifica vence:
  FORA_PERIODO -> CICLO_INCORRETO -> CANCELAR -> CORRECAO -> OK

Override manual (excluir/restaurar/aceitar sugestão) prevalece sobre a regra
até ser desfeito; re-match recalcula só a regra.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from clientes import MatchContext, match_client
from modelos import (
    CanonicalClient,
    Issue,
    IssueKind,
    MatchResult,
    RawRecord,
    ValidationStatus,
)
from normalizacao import br_money, normalize_name, parse_decimal

log = logging.getLogger(__name__)

LIMIAR_CANCELAMENTO_H = Decimal("0.16")
LIMIAR_CORRECAO_H = Decimal("6")

_CENT = Decimal("0.01")


def _inicio_do_dia(d: date | datetime) -> datetime:
    if isinstance(d, datetime):
        return d
    return datetime.combine(d, time(0, 0, 0))


def _fim_do_dia(d: date | datetime) -> datetime:
    if isinstance(d, datetime):
        return d
    return datetime.combine(d, time(23, 59, 59))


@dataclass(frozen=True)
class BatchContext:
    """Período do lote + ciclos selecionados. date vira 00:00:00 / 23:59:59."""
    period_start: Optional[date | datetime] = None
    period_end: Optional[date | datetime] = None
    selected_cycle_ids: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self):
        if self.period_start is not None:
            object.__setattr__(self, "period_start", _inicio_do_dia(self.period_start))
        if self.period_end is not None:
            object.__setattr__(self, "period_end", _fim_do_dia(self.period_end))
        if not isinstance(self.selected_cycle_ids, frozenset):
            object.__setattr__(self, "selected_cycle_ids", frozenset(self.selected_cycle_ids))

    def fora_do_periodo(self, dt: Optional[datetime]) -> bool:
        # sem data de início ou sem período definido não há como julgar
        if dt is None or self.period_start is None or self.period_end is None:
            return False
        return dt < self.period_start or dt > self.period_end

    def ciclo_incorreto(self, client: Optional[CanonicalClient]) -> bool:
        if not self.selected_cycle_ids or client is None:
            return False
        ciclo = client.billing_cycle_id
        return bool(ciclo) and ciclo not in self.selected_cycle_ids


def status_por_regra(record: RawRecord, client: Optional[CanonicalClient], ctx: BatchContext) -> ValidationStatus:
    if ctx.fora_do_periodo(record.start_time):
        return ValidationStatus.OUT_OF_PERIOD
    if ctx.ciclo_incorreto(client):
        return ValidationStatus.WRONG_CYCLE
    d = record.duration_hours
    if Decimal("0") < d < LIMIAR_CANCELAMENTO_H:
        return ValidationStatus.CANCEL
    if d > LIMIAR_CORRECAO_H:
        return ValidationStatus.CORRECTION
    return ValidationStatus.OK


def sugestao_correcao(record: RawRecord) -> tuple[Decimal, Decimal, Optional[datetime]] | None:
    """(fração sugerida, valor sugerido, término sugerido) quando a fração passa de 6h."""
    d = record.duration_hours
    if d <= LIMIAR_CORRECAO_H:
        return None
    valor = (record.gross_amount * LIMIAR_CORRECAO_H / d).quantize(_CENT, rounding=ROUND_HALF_UP)
    if record.start_time is not None:
        termino = record.start_time + timedelta(hours=int(LIMIAR_CORRECAO_H))
    else:
        termino = record.end_time
    return LIMIAR_CORRECAO_H, valor, termino


def classify(record: RawRecord, client: Optional[CanonicalClient], ctx: BatchContext) -> ValidationStatus:
    """Recalcula status de regra e sugestão do registro. Não mexe em override."""
    record.rule_status = status_por_regra(record, client, ctx)
    sug = sugestao_correcao(record)
    if sug is None:
        record.suggested_duration = record.suggested_amount = record.suggested_end_time = None
    else:
        record.suggested_duration, record.suggested_amount, record.suggested_end_time = sug
    return record.status


def classificar_lote(records: Iterable[RawRecord], clients: MatchContext, ctx: BatchContext) -> list[Issue]:
    issues: list[Issue] = []
    avisados: set[str] = set()
    contagem: dict[ValidationStatus, int] = {}
    for rec in records:
        client = clients.get(rec.client_id)
        st = classify(rec, client, ctx)
        contagem[st] = contagem.get(st, 0) + 1
        if rec.rule_status == ValidationStatus.WRONG_CYCLE and client is not None and client.id not in avisados:
            avisados.add(client.id)
            issues.append(Issue(
                IssueKind.CICLO_INCORRETO,
                f"{client.display_name} pertence ao ciclo '{client.billing_cycle_name or client.billing_cycle_id}',"
                f" fora dos ciclos selecionados",
                row_number=rec.row_number, client_id=client.id, store_name=rec.store_name_raw,
            ))
    log.info("Classificação: %s", ", ".join(f"{k.value}={v}" for k, v in sorted(contagem.items(), key=lambda kv: kv[0].value)))
    return issues


def rematch(record: RawRecord, clients: MatchContext, ctx: BatchContext) -> ValidationStatus:
    """Refaz o match (cadastro mudou) e reavalia as regras. Override continua valendo."""
    record.match = match_client(record, clients)
    return classify(record, clients.get(record.client_id), ctx)


def apply_manual_match(
    records: Iterable[RawRecord], store_name_raw: str, client: CanonicalClient, ctx: BatchContext
) -> int:
    """Vincula manualmente todos os registros daquela loja ao cliente escolhido."""
    alvo = normalize_name(store_name_raw)
    n = 0
    for rec in records:
        if normalize_name(rec.store_name_raw) != alvo:
            continue
        rec.match = MatchResult(client.id, tier="manual")
        classify(rec, client, ctx)
        n += 1
    log.info("Vínculo manual: '%s' -> %s (%d registros)", store_name_raw, client.id, n)
    return n


# --- overrides manuais ---

def set_override(record: RawRecord, status: ValidationStatus, reason: str = "") -> None:
    record.override_status = status
    if status == ValidationStatus.REMOVED:
        record.exclusion_reason = reason or record.exclusion_reason or "Excluído manualmente"


def remove(record: RawRecord, reason: str = "") -> None:
    set_override(record, ValidationStatus.REMOVED, reason)


def restore(record: RawRecord) -> None:
    """Desfaz o override de status; a regra volta a valer."""
    record.override_status = None
    record.exclusion_reason = ""


def set_manual_value(record: RawRecord, value) -> None:
    """Valor digitado pelo operador (None limpa). Aceita texto '1.234,56'."""
    if value is None:
        record.manual_value = None
        return
    d = parse_decimal(value)
    if d is None:
        raise ValueError(f"Valor manual inválido: {value!r}")
    record.manual_value = d.quantize(_CENT, rounding=ROUND_HALF_UP)
    log.debug("Linha %s: valor manual %s", record.row_number, br_money(record.manual_value))


def accept_suggestion(record: RawRecord) -> None:
    if record.suggested_amount is None:
        raise ValueError(f"Linha {record.row_number} não tem sugestão de correção")
    record.override_status = ValidationStatus.CORRECTION
    record.manual_value = record.suggested_amount


def reject_suggestion(record: RawRecord) -> None:
    """Mantém fração/valor originais: fatura o bruto como OK."""
    record.override_status = ValidationStatus.OK
    record.manual_value = None
