# -*- coding: utf-8 -*-
"""
Modelo de dados do motor de faturamento.

Agendamento bruto (RawRecord) -> cliente canônico (CanonicalClient) ->
consolidado por loja (ConsolidatedStoreRecord) -> conciliação fiscal
(ReconciliationResult).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional


class ValidationStatus(str, Enum):
    OK = "OK"
    CANCEL = "CANCELAR"
    CORRECTION = "CORRECAO"
    OUT_OF_PERIOD = "FORA_PERIODO"
    WRONG_CYCLE = "CICLO_INCORRETO"
    DUPLICATE = "DUPLICATA"
    REMOVED = "EXCLUIDO"


# status que entram no valor a faturar
STATUS_FATURAVEIS = frozenset({ValidationStatus.OK, ValidationStatus.CORRECTION})


class AdjustmentKind(str, Enum):
    CREDIT = "ACRESCIMO"
    DEBIT = "DESCONTO"


class MatchState(str, Enum):
    MATCHED = "MATCH"
    MISSING = "MISSING"


class IssueKind(str, Enum):
    LINHA_INVALIDA = "LINHA_INVALIDA"
    DATA_INVALIDA = "DATA_INVALIDA"
    VALOR_INVALIDO = "VALOR_INVALIDO"
    LOJA_NAO_CADASTRADA = "LOJA_NAO_CADASTRADA"
    MATCH_AMBIGUO = "MATCH_AMBIGUO"
    CICLO_INCORRETO = "CICLO_INCORRETO"
    HIERARQUIA_INVALIDA = "HIERARQUIA_INVALIDA"
    AJUSTE_DUPLICADO = "AJUSTE_DUPLICADO"
    NF_AUSENTE = "NF_AUSENTE"
    NF_DUPLICADA = "NF_DUPLICADA"
    NF_SEM_LOJA = "NF_SEM_LOJA"
    BASE_NEGATIVA = "BASE_NEGATIVA"


class ErroConfiguracao(Exception):
    """Erro fatal de configuração do lote (ex.: coluna de valor ausente)."""


@dataclass
class Issue:
    """Pendência/aviso acumulado durante o processamento (nunca aborta o lote)."""
    kind: IssueKind
    message: str
    row_number: Optional[int] = None
    client_id: Optional[str] = None
    store_name: Optional[str] = None


@dataclass(frozen=True)
class CanonicalClient:
    id: str
    legal_name: str
    tax_id: str = ""
    trade_name: Optional[str] = None
    short_name: Optional[str] = None
    billing_platform_name: Optional[str] = None
    billing_cycle_id: Optional[str] = None
    billing_cycle_name: Optional[str] = None
    parent_entity_id: Optional[str] = None
    street: Optional[str] = None
    number: Optional[str] = None
    neighborhood: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    active: bool = True

    @property
    def address_complete(self) -> bool:
        campos = (self.street, self.neighborhood, self.city, self.state, self.postal_code)
        return all((c or "").strip() for c in campos)

    @property
    def display_name(self) -> str:
        return self.billing_platform_name or self.legal_name


@dataclass(frozen=True)
class MatchResult:
    client_id: Optional[str] = None
    candidates: tuple[str, ...] = ()
    tier: str = ""  # "cnpj", "plataforma", "nome", "parcial", "manual" ou ""

    @property
    def matched(self) -> bool:
        return self.client_id is not None

    @property
    def ambiguous(self) -> bool:
        return self.client_id is None and len(self.candidates) > 0


@dataclass
class RawRecord:
    row_number: int
    professional_name: str = ""
    phone: str = ""
    region_code: str = ""
    store_name_raw: str = ""
    role_label: str = ""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    external_ref: str = ""
    scheduled_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    gross_amount: Decimal = Decimal("0")
    duration_hours: Decimal = Decimal("0")
    raw_status_label: str = ""
    cancellation_date: Optional[datetime] = None
    cancellation_reason: str = ""
    cancellation_responsible: str = ""
    tax_id_raw: Optional[str] = None
    source_row: dict[str, Any] = field(default_factory=dict)

    # --- classificação (preenchidos pelas etapas seguintes) ---
    match: MatchResult = field(default_factory=MatchResult)
    rule_status: ValidationStatus = ValidationStatus.OK
    override_status: Optional[ValidationStatus] = None
    manual_value: Optional[Decimal] = None
    exclusion_reason: str = ""
    suggested_duration: Optional[Decimal] = None
    suggested_amount: Optional[Decimal] = None
    suggested_end_time: Optional[datetime] = None

    @property
    def client_id(self) -> Optional[str]:
        return self.match.client_id

    @property
    def status(self) -> ValidationStatus:
        # override manual sempre prevalece sobre a regra
        return self.override_status if self.override_status is not None else self.rule_status

    @property
    def is_removed(self) -> bool:
        return self.status == ValidationStatus.REMOVED

    @property
    def manually_overridden(self) -> bool:
        return self.override_status is not None or self.manual_value is not None


@dataclass(frozen=True)
class Adjustment:
    id: str
    client_id: str
    kind: AdjustmentKind
    amount: Decimal
    reason: str = ""
    applied: bool = False
    professional_name: str = ""


@dataclass
class ConsolidatedStoreRecord:
    client_id: str
    gross_total: Decimal = Decimal("0")
    credits_total: Decimal = Decimal("0")
    debits_total: Decimal = Decimal("0")
    record_count: int = 0
    children: list["ConsolidatedStoreRecord"] = field(default_factory=list)
    adjustment_ids: list[str] = field(default_factory=list)
    folded_into: Optional[str] = None

    @property
    def base_amount(self) -> Decimal:
        return self.gross_total + self.credits_total - self.debits_total


@dataclass(frozen=True)
class FiscalDocument:
    tax_id: str
    document_number: str = ""
    withholding_tax_amount: Decimal = Decimal("0")
    source: str = ""


@dataclass
class ReconciliationResult:
    consolidated: ConsolidatedStoreRecord
    fiscal_document: Optional[FiscalDocument]
    match_state: MatchState
    base_amount: Decimal
    withholding_tax: Decimal
    credit_note_amount: Decimal
    invoice_amount: Decimal
    final_payable: Decimal
    invoice_suppressed: bool = False
    withholding_estimated: bool = False

    @property
    def client_id(self) -> str:
        return self.consolidated.client_id
