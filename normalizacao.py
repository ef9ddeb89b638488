# -*- coding: utf-8 -*-
"""
Normalização da planilha de agendamentos (linha -> RawRecord).

- Cabeçalhos imprevisíveis: cada campo lógico tem uma lista de apelidos,
  resolvida UMA vez por lote contra a lista de cabeçalhos (ColumnMap).
- Datas: serial do Excel, dd/mm/aaaa [hh:mm[:ss]] e fallback via pandas.
- Valores: formato brasileiro (1.234,56) e internacional (1,234.56).
"""
from __future__ import annotations

import logging
import math
import re
import unicodedata
import warnings
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, Optional

import pandas as pd

from modelos import ErroConfiguracao, Issue, IssueKind, RawRecord

log = logging.getLogger(__name__)

EXCEL_EPOCH = datetime(1899, 12, 30)
# faixa aceita como serial de data (~1927 a ~2173); fora disso o número não é data
EXCEL_SERIAL_MIN = 10000
EXCEL_SERIAL_MAX = 100000

# campo lógico -> apelidos aceitos no cabeçalho (ordem importa: primeiro acerto vence)
COLUNAS: dict[str, list[str]] = {
    "professional_name": ["nome", "profissional", "login", "vendedor"],
    "phone": ["telefone"],
    "region_code": ["estado", "uf"],
    "store_name_raw": ["loja", "empresa", "cliente"],
    "role_label": ["vaga"],
    "start_time": ["início", "inicio", "data início", "data inicio", "data_inicio"],
    "end_time": ["término", "termino", "fim", "data fim", "data_fim", "data término"],
    "external_ref": ["ref agendamento", "ref_agendamento", "id_agendamento", "referencia"],
    "scheduled_at": ["agendado em", "agendado_em"],
    "started_at": ["iniciado em", "iniciado_em"],
    "completed_at": ["concluido em", "concluido_em"],
    "gross_amount": ["valor iwof", "valor_iwof", "valor"],
    "duration_hours": ["fração de hora computada", "fhc", "fracao_hora", "fracao de hora computada"],
    "raw_status_label": ["status"],
    "cancellation_date": ["data do cancelamento", "data_cancelamento"],
    "cancellation_reason": ["motivo"],
    "cancellation_responsible": ["responsável pelo cancelamento", "responsavel_cancelamento"],
    "tax_id_raw": ["cnpj", "cnpj loja", "cnpj_loja", "cnpj empresa", "cnpj_empresa"],
}

COLUNAS_OBRIGATORIAS = ("gross_amount",)

_DATE_FIELDS = ("start_time", "end_time", "scheduled_at", "started_at", "completed_at", "cancellation_date")

_DMY_RE = re.compile(
    r"^(\d{1,2})[/\-](\d{1,2})[/\-](\d{4})(?:[\sT]+(\d{1,2}):(\d{2})(?::(\d{2}))?)?\s*$"
)
_NUMERIC_RE = re.compile(r"^-?\d+(?:[.,]\d+)?$")
_MOEDA_LIXO_RE = re.compile(r"[^\d,.\-]")


def _is_blank(val: Any) -> bool:
    if val is None or val is pd.NaT:
        return True
    if isinstance(val, float) and pd.isna(val):
        return True
    return isinstance(val, str) and not val.strip()


def texto(val: Any) -> str:
    if _is_blank(val):
        return ""
    return str(val).strip()


def _header_key(s: str) -> str:
    s = (s or "").strip().casefold()
    s = unicodedata.normalize("NFKD", s)
    return "".join(ch for ch in s if not unicodedata.combining(ch))


def normalize_name(s: Optional[str]) -> str:
    """Chave de comparação de nomes: minúsculas, sem acento, espaços colapsados."""
    if not s:
        return ""
    s = unicodedata.normalize("NFKD", str(s))
    s = "".join(ch for ch in s if not unicodedata.combining(ch))
    return " ".join(s.casefold().split())


def normalize_tax_id(raw: Any) -> str:
    if _is_blank(raw):
        return ""
    # Excel costuma devolver CNPJ numérico como float (12345678000190.0)
    if isinstance(raw, float) and raw.is_integer():
        raw = int(raw)
    return re.sub(r"\D", "", str(raw))


def format_cnpj(digits: str) -> str:
    d = normalize_tax_id(digits)
    if len(d) != 14:
        return d
    return f"{d[:2]}.{d[2:5]}.{d[5:8]}/{d[8:12]}-{d[12:]}"


def br_money(x: Decimal | float | int | None) -> str:
    if x is None:
        return "R$ -"
    try:
        d = Decimal(str(x))
    except (InvalidOperation, ValueError):
        return "R$ -"
    if not d.is_finite():
        return "R$ -"
    q = d.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    # 1,234.50 -> 1.234,50
    corpo = f"{abs(q):,.2f}".translate(str.maketrans(",.", ".,"))
    return f"R$ -{corpo}" if q < 0 else f"R$ {corpo}"


def _from_excel_serial(n: float) -> datetime:
    dias = math.floor(n)
    segundos = round((n - dias) * 86400)
    return EXCEL_EPOCH + timedelta(days=dias, seconds=segundos)


def parse_date(val: Any) -> datetime | None:
    """Interpreta data/hora vinda da planilha. Retorna None se não der para ler."""
    if _is_blank(val):
        return None
    if isinstance(val, pd.Timestamp):
        return None if pd.isna(val) else val.to_pydatetime()
    if isinstance(val, datetime):
        return val
    if isinstance(val, date):
        return datetime.combine(val, time())
    if isinstance(val, bool):
        return None
    if isinstance(val, (int, float, Decimal)):
        n = float(val)
        if EXCEL_SERIAL_MIN < n < EXCEL_SERIAL_MAX:
            return _from_excel_serial(n)
        return None

    s = str(val).strip()
    if _NUMERIC_RE.match(s):
        n = float(s.replace(",", "."))
        if EXCEL_SERIAL_MIN < n < EXCEL_SERIAL_MAX:
            return _from_excel_serial(n)
        return None

    m = _DMY_RE.match(s)
    if m:
        d, mo, y, hh, mi, ss = m.groups()
        try:
            return datetime(int(y), int(mo), int(d), int(hh or 0), int(mi or 0), int(ss or 0))
        except ValueError:
            pass

    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            ts = pd.to_datetime(s, dayfirst=True, errors="coerce")
    except (ValueError, TypeError, OverflowError):
        return None
    if ts is None or pd.isna(ts):
        return None
    if ts.tzinfo is not None:
        ts = ts.tz_convert(None)
    return ts.to_pydatetime()


def parse_decimal(val: Any) -> Decimal | None:
    """
    Valor monetário pt-BR ou internacional -> Decimal. None se ilegível/vazio.

    Com "." e ",": o mais à direita é o decimal. Só ",": uma vírgula é decimal
    (10,50); várias são milhar (1,234,567 -> 1234567). Só ".": um ponto é
    decimal, vários são milhar.
    """
    if _is_blank(val) or isinstance(val, bool):
        return None
    if isinstance(val, Decimal):
        return val if val.is_finite() else None
    if isinstance(val, (int, float)):
        if isinstance(val, float) and not math.isfinite(val):
            return None
        return Decimal(str(val))
    s = _MOEDA_LIXO_RE.sub("", str(val))
    if not any(ch.isdigit() for ch in s):
        return None
    tem_virgula = "," in s
    tem_ponto = "." in s
    if tem_virgula and tem_ponto:
        # o separador mais à direita é o decimal
        if s.rfind(",") > s.rfind("."):
            s = s.replace(".", "").replace(",", ".")
        else:
            s = s.replace(",", "")
    elif tem_virgula:
        s = s.replace(",", "") if s.count(",") > 1 else s.replace(",", ".")
    elif tem_ponto and s.count(".") > 1:
        s = s.replace(".", "")
    try:
        d = Decimal(s)
    except InvalidOperation:
        return None
    return d if d.is_finite() else None


def parse_amount(val: Any) -> Decimal:
    d = parse_decimal(val)
    return d if d is not None else Decimal("0")


@dataclass
class ColumnMap:
    """Resolução campo lógico -> cabeçalho real, feita uma vez por lote."""
    columns: dict[str, Optional[str]]

    @classmethod
    def resolve(
        cls,
        headers: Iterable[str],
        aliases: Mapping[str, list[str]] = COLUNAS,
        required: Iterable[str] = COLUNAS_OBRIGATORIAS,
    ) -> "ColumnMap":
        headers = [str(h) for h in headers]
        keys = [_header_key(h) for h in headers]
        out: dict[str, Optional[str]] = {}
        for campo, opts in aliases.items():
            found: Optional[str] = None
            # 1) exato (sem caixa/acento)
            for o in opts:
                ok = _header_key(o)
                if ok in keys:
                    found = headers[keys.index(ok)]
                    break
            # 2) substring (último recurso)
            if found is None:
                for o in opts:
                    ok = _header_key(o)
                    idx = next((i for i, k in enumerate(keys) if ok in k), None)
                    if idx is not None:
                        found = headers[idx]
                        break
            out[campo] = found

        faltando = [c for c in required if out.get(c) is None]
        if faltando:
            hint = ", ".join(keys) if keys else "<sem_colunas>"
            raise ErroConfiguracao(
                f"Coluna obrigatória não encontrada: {', '.join(faltando)}. Colunas: {hint}"
            )
        return cls(out)

    def header(self, campo: str) -> Optional[str]:
        return self.columns.get(campo)

    def get(self, row: Mapping[str, Any], campo: str) -> Any:
        h = self.columns.get(campo)
        if h is None:
            return None
        return row.get(h)

    def text(self, row: Mapping[str, Any], campo: str) -> str:
        return texto(self.get(row, campo))


@dataclass
class NormalizationResult:
    records: list[RawRecord] = field(default_factory=list)
    skipped: int = 0
    issues: list[Issue] = field(default_factory=list)


def normalize_row(
    cols: ColumnMap, row: Mapping[str, Any], row_number: int
) -> tuple[RawRecord | None, list[Issue]]:
    issues: list[Issue] = []
    store = cols.text(row, "store_name_raw").upper()
    ref = cols.text(row, "external_ref")
    if not store and not ref:
        return None, issues

    datas: dict[str, Optional[datetime]] = {}
    for campo in _DATE_FIELDS:
        bruto = cols.get(row, campo)
        dt = parse_date(bruto)
        if dt is None and not _is_blank(bruto):
            issues.append(Issue(
                IssueKind.DATA_INVALIDA,
                f"Data ilegível em '{cols.header(campo)}': {bruto!r}",
                row_number=row_number, store_name=store,
            ))
        datas[campo] = dt

    valores: dict[str, Decimal] = {}
    for campo in ("gross_amount", "duration_hours"):
        bruto = cols.get(row, campo)
        d = parse_decimal(bruto)
        if d is None and not _is_blank(bruto):
            issues.append(Issue(
                IssueKind.VALOR_INVALIDO,
                f"Valor ilegível em '{cols.header(campo)}': {bruto!r} (considerado 0)",
                row_number=row_number, store_name=store,
            ))
        valores[campo] = d if d is not None else Decimal("0")

    tax_id = normalize_tax_id(cols.get(row, "tax_id_raw"))

    rec = RawRecord(
        row_number=row_number,
        professional_name=cols.text(row, "professional_name"),
        phone=cols.text(row, "phone"),
        region_code=cols.text(row, "region_code").upper(),
        store_name_raw=store,
        role_label=cols.text(row, "role_label"),
        start_time=datas["start_time"],
        end_time=datas["end_time"],
        external_ref=ref,
        scheduled_at=datas["scheduled_at"],
        started_at=datas["started_at"],
        completed_at=datas["completed_at"],
        gross_amount=valores["gross_amount"],
        duration_hours=valores["duration_hours"],
        raw_status_label=cols.text(row, "raw_status_label"),
        cancellation_date=datas["cancellation_date"],
        cancellation_reason=cols.text(row, "cancellation_reason"),
        cancellation_responsible=cols.text(row, "cancellation_responsible"),
        tax_id_raw=tax_id or None,
        source_row=dict(row),
    )
    return rec, issues


def normalizar_planilha(
    headers: Iterable[str],
    rows: Iterable[Mapping[str, Any]],
    aliases: Mapping[str, list[str]] = COLUNAS,
) -> NormalizationResult:
    """Normaliza todas as linhas. Só a coluna de valor ausente aborta (ErroConfiguracao)."""
    cols = ColumnMap.resolve(headers, aliases)
    res = NormalizationResult()
    for idx, row in enumerate(rows):
        # linha 1 = cabeçalho
        row_number = idx + 2
        try:
            rec, issues = normalize_row(cols, row, row_number)
        except Exception as e:
            log.warning("Linha %s descartada: %r", row_number, e)
            res.issues.append(Issue(IssueKind.LINHA_INVALIDA, f"Falha ao ler linha: {e}", row_number=row_number))
            res.skipped += 1
            continue
        res.issues.extend(issues)
        if rec is None:
            res.skipped += 1
            continue
        res.records.append(rec)
    log.info("Planilha normalizada: %d registros, %d linhas ignoradas, %d avisos",
             len(res.records), res.skipped, len(res.issues))
    return res
