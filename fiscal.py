# -*- coding: utf-8 -*-
"""
Conciliação fiscal: consolidado por loja x NFS-e (pelo CNPJ do tomador).

base   = bruto + acréscimos - descontos
NF     = base * 11,5%   (0 quando a loja está marcada sem NF)
NC     = base * 88,5%
IRRF   = ValorIr da nota; sem nota, estimado só para o ciclo com regra própria
boleto = base, ou base - IRRF conforme PayablePolicy
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Iterable, Mapping, Optional

from ciclo_providers import ClientPredicate, deduction_predicate, withholding_predicate
from clientes import MatchContext
from modelos import (
    ConsolidatedStoreRecord,
    FiscalDocument,
    Issue,
    IssueKind,
    MatchState,
    ReconciliationResult,
)
from normalizacao import br_money, format_cnpj, normalize_tax_id, parse_decimal, texto

log = logging.getLogger(__name__)

PERC_NF = Decimal("0.115")
PERC_NC = Decimal("0.885")
PERC_IRRF_ESTIMADO = Decimal("0.015")

_CENT = Decimal("0.01")

# tags do XML da NFS-e já extraídas (chave -> texto)
TAGS_DOCUMENTO = ("Cnpj", "Cpf", "CPFCNPJ", "CpfCnpj")
TAGS_NUMERO = ("Numero", "NumeroNfse")
TAGS_IRRF = ("ValorIr", "ValorIR", "ValorIrrf")


def _q(v: Decimal) -> Decimal:
    return v.quantize(_CENT, rounding=ROUND_HALF_UP)


class PayablePolicy(str, Enum):
    ANOTAR = "ANOTAR"                            # boleto = base; IRRF só informativo
    DESCONTAR = "DESCONTAR"                      # boleto = base - IRRF para todos
    DESCONTAR_POR_CICLO = "DESCONTAR_POR_CICLO"  # desconta só onde a regra do ciclo manda


@dataclass(frozen=True)
class FiscalRules:
    invoice_rate: Decimal = PERC_NF
    credit_note_rate: Decimal = PERC_NC
    withholding_rate: Decimal = PERC_IRRF_ESTIMADO
    payable_policy: PayablePolicy = PayablePolicy.ANOTAR
    withholding_cluster: Optional[ClientPredicate] = withholding_predicate
    deducts_withholding: Optional[ClientPredicate] = deduction_predicate
    # loja sem NF: NC cobre a base inteira em vez de 88,5%
    credit_note_absorbs_suppressed_invoice: bool = False


def _pick(mapping: Mapping[str, Any], keys: Iterable[str]) -> Any:
    low = {str(k).casefold(): v for k, v in mapping.items()}
    for k in keys:
        v = low.get(k.casefold())
        if texto(v):
            return v
    return None


def fiscal_document_from_tags(mapping: Mapping[str, Any], source: str = "") -> FiscalDocument | None:
    """Monta o FiscalDocument a partir das tags já lidas do XML. None sem CNPJ/CPF."""
    tax = normalize_tax_id(_pick(mapping, TAGS_DOCUMENTO))
    if not tax:
        log.warning("Documento fiscal sem CNPJ/CPF do tomador ignorado (%s)", source or "?")
        return None
    irrf = parse_decimal(_pick(mapping, TAGS_IRRF))
    return FiscalDocument(
        tax_id=tax,
        document_number=texto(_pick(mapping, TAGS_NUMERO)),
        withholding_tax_amount=irrf if irrf is not None else Decimal("0"),
        source=source,
    )


def _indexar_documentos(
    documents: Iterable[FiscalDocument], issues: list[Issue]
) -> dict[str, FiscalDocument]:
    idx: dict[str, FiscalDocument] = {}
    for doc in documents:
        tax = normalize_tax_id(doc.tax_id)
        if not tax:
            continue
        if tax in idx:
            issues.append(Issue(
                IssueKind.NF_DUPLICADA,
                f"Mais de uma nota para o CNPJ {format_cnpj(tax)}: "
                f"mantida {idx[tax].document_number or '?'}, ignorada {doc.document_number or '?'}",
            ))
            continue
        idx[tax] = doc
    return idx


def _suprimida(loja: ConsolidatedStoreRecord, suppressed: frozenset[str]) -> bool:
    if loja.client_id in suppressed:
        return True
    return any(c.client_id in suppressed for c in loja.children)


def _boleto(base: Decimal, irrf: Decimal, client, rules: FiscalRules) -> Decimal:
    if rules.payable_policy == PayablePolicy.DESCONTAR:
        return base - irrf
    if rules.payable_policy == PayablePolicy.DESCONTAR_POR_CICLO:
        if client is not None and rules.deducts_withholding is not None and rules.deducts_withholding(client):
            return base - irrf
    return base


def reconcile_store(
    loja: ConsolidatedStoreRecord,
    doc: Optional[FiscalDocument],
    client,
    rules: FiscalRules = FiscalRules(),
    invoice_suppressed: bool = False,
) -> ReconciliationResult:
    base = loja.base_amount
    nf = Decimal("0.00") if invoice_suppressed else _q(base * rules.invoice_rate)
    if invoice_suppressed and rules.credit_note_absorbs_suppressed_invoice:
        nc = _q(base)
    else:
        nc = _q(base * rules.credit_note_rate)

    estimado = False
    if doc is not None:
        irrf = _q(doc.withholding_tax_amount)
    elif client is not None and rules.withholding_cluster is not None and rules.withholding_cluster(client):
        irrf = _q(nf * rules.withholding_rate)
        estimado = True
    else:
        irrf = Decimal("0.00")

    return ReconciliationResult(
        consolidated=loja,
        fiscal_document=doc,
        match_state=MatchState.MATCHED if doc is not None else MatchState.MISSING,
        base_amount=base,
        withholding_tax=irrf,
        credit_note_amount=nc,
        invoice_amount=nf,
        final_payable=_boleto(base, irrf, client, rules),
        invoice_suppressed=invoice_suppressed,
        withholding_estimated=estimado,
    )


def reconcile(
    consolidated: Iterable[ConsolidatedStoreRecord],
    documents: Iterable[FiscalDocument],
    clients: MatchContext,
    rules: FiscalRules = FiscalRules(),
    invoice_suppressed: Iterable[str] = (),
) -> tuple[list[ReconciliationResult], list[Issue]]:
    """Nota ausente não bloqueia: vira MISSING + pendência NF_AUSENTE."""
    issues: list[Issue] = []
    docs = _indexar_documentos(documents, issues)
    suppressed = frozenset(invoice_suppressed)
    usados: set[str] = set()
    out: list[ReconciliationResult] = []

    for loja in consolidated:
        client = clients.get(loja.client_id)
        tax = normalize_tax_id(client.tax_id) if client is not None else ""
        doc = docs.get(tax) if tax else None
        if doc is not None:
            usados.add(tax)
        res = reconcile_store(loja, doc, client, rules, _suprimida(loja, suppressed))
        nome = client.display_name if client is not None else loja.client_id
        if res.match_state == MatchState.MISSING and not res.invoice_suppressed:
            issues.append(Issue(IssueKind.NF_AUSENTE,
                                f"Sem nota fiscal para {nome} ({format_cnpj(tax) or 'sem CNPJ'})",
                                client_id=loja.client_id))
        if res.base_amount < 0:
            issues.append(Issue(IssueKind.BASE_NEGATIVA,
                                f"Base negativa para {nome}: {br_money(res.base_amount)}",
                                client_id=loja.client_id))
        out.append(res)

    for tax, doc in docs.items():
        if tax not in usados:
            issues.append(Issue(IssueKind.NF_SEM_LOJA,
                                f"Nota {doc.document_number or '?'} do CNPJ {format_cnpj(tax)} "
                                f"não corresponde a nenhuma loja do lote"))

    n_ok = sum(1 for r in out if r.match_state == MatchState.MATCHED)
    log.info("Conciliação fiscal: %d com nota, %d sem nota, %d notas sem loja",
             n_ok, len(out) - n_ok, len(docs) - len(usados))
    return out, issues
