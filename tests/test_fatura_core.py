import logging
import os
import tempfile
import unittest
from datetime import date
from decimal import Decimal

import fatura_core as fc
from fiscal import FiscalRules
from modelos import CanonicalClient, ErroConfiguracao, FiscalDocument, IssueKind, MatchState, ValidationStatus
from validacao import BatchContext, apply_manual_match

HEADERS = ["Nome", "Telefone", "Loja", "Vaga", "Início", "Término", "Ref Agendamento",
           "Valor IWOF", "Fração de hora computada"]


def _row(nome, loja, inicio, termino, ref, valor, fracao):
    return dict(zip(HEADERS, [nome, "11999990000", loja, "Repositor", inicio, termino, ref, valor, fracao]))


ROWS = [
    _row("Ana", "LOJA CENTRO", "05/03/2024 08:00", "05/03/2024 12:00", "R1", "100,00", "4"),
    _row("Ana", "LOJA CENTRO", "05/03/2024 08:00", "05/03/2024 12:00", "R1", "100,00", "4"),
    _row("Bruno", "LOJA CENTRO", "06/03/2024 08:00", "06/03/2024 16:00", "R3", "80,00", "8"),
    _row("Carla", "LOJA NORTE", "07/03/2024 08:00", "07/03/2024 08:06", "R4", "50,00", "0,1"),
    _row("Davi", "LOJA DESCONHECIDA", "08/03/2024 08:00", "08/03/2024 12:00", "R5", "40,00", "4"),
    _row("Eva", "LOJA CENTRO", "10/04/2024 08:00", "10/04/2024 12:00", "R6", "30,00", "4"),
    _row("", "", "", "", "", "", ""),
]

CLIENTES = [
    CanonicalClient(id="c1", legal_name="Mercado Centro", tax_id="11111111000111",
                    billing_platform_name="LOJA CENTRO", billing_cycle_id="ciclo1", billing_cycle_name="SEMANAL"),
    CanonicalClient(id="c2", legal_name="Mercado Norte", tax_id="22222222000122",
                    billing_platform_name="LOJA NORTE", billing_cycle_id="ciclo1", billing_cycle_name="SEMANAL"),
    CanonicalClient(id="c3", legal_name="Mercado Sul", tax_id="33333333000133",
                    billing_platform_name="LOJA SUL", billing_cycle_id="ciclo1", billing_cycle_name="SEMANAL"),
]


class PipelineTests(unittest.TestCase):
    def setUp(self) -> None:
        self.ctx = BatchContext(date(2024, 3, 1), date(2024, 3, 31), {"ciclo1"})
        self.docs = [FiscalDocument("11111111000111", "900", Decimal("0"))]
        self.res = fc.processar_lote(HEADERS, ROWS, CLIENTES, self.ctx, fiscal_documents=self.docs)

    def _status(self, row_number):
        return next(r.status for r in self.res.records if r.row_number == row_number)

    def test_leitura_e_classificacao(self) -> None:
        self.assertEqual(len(self.res.records), 6)
        self.assertEqual(self.res.skipped, 1)
        self.assertEqual(self._status(2), ValidationStatus.OK)
        self.assertEqual(self._status(3), ValidationStatus.REMOVED)
        self.assertEqual(self._status(4), ValidationStatus.CORRECTION)
        self.assertEqual(self._status(5), ValidationStatus.CANCEL)
        self.assertEqual(self._status(7), ValidationStatus.OUT_OF_PERIOD)

    def test_consolidacao_e_conciliacao(self) -> None:
        self.assertEqual(set(self.res.consolidation.records), {"c1"})
        self.assertEqual(self.res.consolidation.records["c1"].gross_total, Decimal("160.00"))
        (rec,) = self.res.reconciliation
        self.assertEqual(rec.match_state, MatchState.MATCHED)
        self.assertEqual(rec.invoice_amount, Decimal("18.40"))
        self.assertEqual(rec.credit_note_amount, Decimal("141.60"))

    def test_relatorio_de_conciliacao(self) -> None:
        conc = self.res.conciliation
        self.assertEqual([u.store_name_raw for u in conc.unregistered], ["LOJA DESCONHECIDA"])
        self.assertEqual(conc.unregistered[0].gross_total, Decimal("40.00"))
        self.assertEqual([c.id for c in conc.absent_clients], ["c3"])
        self.assertIn(IssueKind.LOJA_NAO_CADASTRADA, [i.kind for i in self.res.issues])

    def test_contagens(self) -> None:
        c = self.res.status_counts
        self.assertEqual(c.excluded, 1)
        self.assertEqual(c.out_of_period, 1)
        self.assertEqual(c.corrections, 1)
        self.assertEqual(c.divergent, 1)
        self.assertEqual(c.wrong_cycle, 0)

    def test_resumo_financeiro(self) -> None:
        s = self.res.summary
        self.assertEqual(s.line("SEMANAL").total, Decimal("160.00"))
        self.assertEqual(s.line(fc.SEM_CICLO).total, Decimal("40.00"))
        self.assertEqual(s.line(fc.LINHA_LIQUIDO_LOTE).total, Decimal("200.00"))
        self.assertEqual(s.line(fc.LINHA_BRUTO_ORIGINAL).total, Decimal("400.00"))
        self.assertEqual(s.line(fc.LINHA_EXCLUIDOS).total, Decimal("100.00"))
        self.assertEqual(s.line(fc.LINHA_PENDENTES_CORRECAO).total, Decimal("60.00"))
        self.assertEqual(s.billed_companies, 2)
        df = s.dataframe()
        bruto = df.loc[df["ciclo"] == fc.LINHA_BRUTO_ORIGINAL, "participacao"].iloc[0]
        self.assertAlmostEqual(bruto, 100.0)

    def test_exportacao(self) -> None:
        df = fc.records_dataframe(self.res.records)
        self.assertEqual(len(df), 6)
        self.assertAlmostEqual(df.loc[df["linha"] == 4, "valor_faturado"].iloc[0], 60.0)
        self.assertEqual(df.loc[df["linha"] == 3, "status"].iloc[0], "EXCLUIDO")
        res_df = fc.results_dataframe(self.res.reconciliation, self.res.clients)
        self.assertEqual(res_df.loc[0, "cliente"], "LOJA CENTRO")
        self.assertAlmostEqual(res_df.loc[0, "base"], 160.0)

    def test_reconciliar_apos_vinculo_manual(self) -> None:
        c2 = self.res.clients.get("c2")
        apply_manual_match(self.res.records, "LOJA DESCONHECIDA", c2, self.ctx)
        novo = fc.reconciliar_lote(self.res, fiscal_documents=self.docs)
        self.assertEqual(novo.consolidation.records["c2"].gross_total, Decimal("40.00"))
        kinds = [i.kind for i in novo.issues]
        self.assertEqual(kinds.count(IssueKind.NF_AUSENTE), 1)
        self.assertEqual(novo.conciliation.unregistered, [])

    def test_sem_notas_pula_conciliacao_fiscal(self) -> None:
        res = fc.processar_lote(HEADERS, ROWS, CLIENTES, self.ctx, rules=FiscalRules())
        self.assertEqual(res.reconciliation, [])
        self.assertEqual(len(res.consolidation.records), 1)

    def test_sem_coluna_de_valor_aborta(self) -> None:
        with self.assertRaises(ErroConfiguracao):
            fc.processar_lote(["Nome", "Loja"], [], CLIENTES, self.ctx)


class ResumoVazioTests(unittest.TestCase):
    def test_participacao_sem_bruto(self) -> None:
        s = fc.FinancialSummary([fc.SummaryLine(fc.LINHA_BRUTO_ORIGINAL, Decimal("0"), 0)])
        df = s.dataframe()
        self.assertTrue(df["participacao"].isna().all())


class LogTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = logging.getLogger()
        self._nivel = self.root.level
        self._handlers = list(self.root.handlers)

    def tearDown(self) -> None:
        for h in list(self.root.handlers):
            if h not in self._handlers:
                self.root.removeHandler(h)
                h.close()
        self.root.setLevel(self._nivel)
        self._tmp.cleanup()

    def test_dois_arquivos_sem_duplicar_handler(self) -> None:
        imp, err = fc.configurar_log(self._tmp.name)
        fc.configurar_log(self._tmp.name)
        meus = [h for h in self.root.handlers if getattr(h, "baseFilename", "").startswith(os.path.realpath(self._tmp.name))]
        self.assertEqual(len(meus), 2)
        logging.getLogger("fatura_core").warning("teste de aviso")
        for h in meus:
            h.flush()
        with open(err, encoding="utf-8") as f:
            self.assertIn("AVISO", f.read())
        self.assertTrue(os.path.exists(imp))


if __name__ == "__main__":
    unittest.main()
