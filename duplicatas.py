# -*- coding: utf-8 -*-
"""
Detecção de agendamentos duplicados.

- Exata: mesma chave composta (profissional, loja, início, término, valor,
  vaga, telefone, fração). Pode ser resolvida automaticamente (mantém o primeiro).
- Suspeita: mesmo início/término/loja e mesmo profissional ignorando caixa e
  espaços. Só o operador decide.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from modelos import RawRecord, ValidationStatus
from normalizacao import normalize_name
from validacao import remove, restore, set_override

log = logging.getLogger(__name__)

MOTIVO_DUPLICATA = "Duplicata exata"


@dataclass
class DuplicateReport:
    exact_groups: list[list[RawRecord]] = field(default_factory=list)
    suspicious_groups: list[list[RawRecord]] = field(default_factory=list)

    @property
    def exact_surplus(self) -> int:
        return sum(len(g) - 1 for g in self.exact_groups)


def exact_key(rec: RawRecord) -> tuple:
    return (
        normalize_name(rec.professional_name),
        normalize_name(rec.store_name_raw),
        rec.start_time,
        rec.end_time,
        rec.gross_amount,
        normalize_name(rec.role_label),
        rec.phone.strip(),
        rec.duration_hours,
    )


def suspicious_key(rec: RawRecord) -> tuple:
    # horário ausente nos dois lados conta como igual
    return (
        rec.start_time,
        rec.end_time,
        normalize_name(rec.store_name_raw),
        " ".join(rec.professional_name.upper().split()),
    )


def _agrupar(records: Iterable[RawRecord], key) -> list[list[RawRecord]]:
    grupos: dict[tuple, list[RawRecord]] = {}
    for rec in records:
        grupos.setdefault(key(rec), []).append(rec)
    # dict preserva a ordem de inserção: grupos saem na ordem da planilha
    return [g for g in grupos.values() if len(g) >= 2]


def detect_duplicates(records: Iterable[RawRecord]) -> DuplicateReport:
    """Particiona os registros ativos em grupos exatos e suspeitos (disjuntos)."""
    ativos = [r for r in records if not r.is_removed]
    exatos = _agrupar(ativos, exact_key)
    em_exato = {id(r) for g in exatos for r in g}
    resto = [r for r in ativos if id(r) not in em_exato]
    suspeitos = _agrupar(resto, suspicious_key)
    log.info("Duplicidade: %d grupos exatos (%d excedentes), %d grupos suspeitos",
             len(exatos), sum(len(g) - 1 for g in exatos), len(suspeitos))
    return DuplicateReport(exatos, suspeitos)


def keep_first(group: list[RawRecord], reason: str = MOTIVO_DUPLICATA) -> int:
    """Mantém o primeiro do grupo (restaura se estava excluído) e exclui os demais. Retorna quantos excluiu."""
    if not group:
        return 0
    if group[0].is_removed:
        restore(group[0])
    n = 0
    for rec in group[1:]:
        if not rec.is_removed:
            remove(rec, reason)
            n += 1
    return n


def toggle_removed(record: RawRecord) -> ValidationStatus:
    if record.is_removed:
        restore(record)
    else:
        remove(record)
    return record.status


def auto_resolve_exact(report: DuplicateReport) -> int:
    n = sum(keep_first(g) for g in report.exact_groups)
    if n:
        log.info("Duplicatas exatas excluídas automaticamente: %d", n)
    return n


def flag_exact_duplicates(report: DuplicateReport) -> int:
    """Marca os excedentes como DUPLICATA sem excluir (decisão fica com o operador)."""
    n = 0
    for g in report.exact_groups:
        for rec in g[1:]:
            set_override(rec, ValidationStatus.DUPLICATE)
            n += 1
    return n
