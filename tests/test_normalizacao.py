import unittest
from datetime import datetime
from decimal import Decimal

import normalizacao as nz
from modelos import ErroConfiguracao, IssueKind


class MoedaTests(unittest.TestCase):
    def test_formato_brasileiro(self) -> None:
        self.assertEqual(nz.parse_decimal("1.234,56"), Decimal("1234.56"))

    def test_formato_internacional(self) -> None:
        self.assertEqual(nz.parse_decimal("1,234.56"), Decimal("1234.56"))

    def test_simbolo_de_moeda(self) -> None:
        self.assertEqual(nz.parse_decimal("R$ 10,00"), Decimal("10.00"))

    def test_pontos_repetidos_sao_milhar(self) -> None:
        self.assertEqual(nz.parse_decimal("1.234.567"), Decimal("1234567"))

    def test_ponto_unico_e_decimal(self) -> None:
        self.assertEqual(nz.parse_decimal("1.5"), Decimal("1.5"))

    def test_virgulas_repetidas_sao_milhar(self) -> None:
        self.assertEqual(nz.parse_decimal("1,234,567"), Decimal("1234567"))
        self.assertEqual(nz.parse_decimal("10,5"), Decimal("10.5"))

    def test_ilegivel_vira_zero(self) -> None:
        self.assertIsNone(nz.parse_decimal("abc"))
        self.assertEqual(nz.parse_amount("abc"), Decimal("0"))
        self.assertEqual(nz.parse_amount(None), Decimal("0"))

    def test_numero_nativo(self) -> None:
        self.assertEqual(nz.parse_amount(12.5), Decimal("12.5"))
        self.assertEqual(nz.parse_amount(7), Decimal("7"))

    def test_br_money(self) -> None:
        self.assertEqual(nz.br_money(Decimal("1234.5")), "R$ 1.234,50")
        self.assertEqual(nz.br_money(Decimal("-10")), "R$ -10,00")
        self.assertEqual(nz.br_money(None), "R$ -")
        self.assertEqual(nz.br_money(Decimal("1234567.891")), "R$ 1.234.567,89")
        self.assertEqual(nz.br_money(Decimal("0.005")), "R$ 0,01")


class DataTests(unittest.TestCase):
    def test_dd_mm_aaaa_com_hora(self) -> None:
        self.assertEqual(nz.parse_date("05/03/2024 14:30"), datetime(2024, 3, 5, 14, 30))

    def test_separador_hifen_e_segundos(self) -> None:
        self.assertEqual(nz.parse_date("05-03-2024 08:15:20"), datetime(2024, 3, 5, 8, 15, 20))

    def test_texto_depois_da_hora_nao_e_ignorado(self) -> None:
        dt = nz.parse_date("01/02/2024 10:30 PM")
        self.assertNotEqual(dt, datetime(2024, 2, 1, 10, 30))
        if dt is not None:
            self.assertEqual((dt.day, dt.month, dt.hour), (1, 2, 22))

    def test_espaco_no_fim_ainda_e_dd_mm_aaaa(self) -> None:
        self.assertEqual(nz.parse_date("05/03/2024 14:30  "), datetime(2024, 3, 5, 14, 30))

    def test_serial_do_excel_com_fracao(self) -> None:
        self.assertEqual(nz.parse_date(45000.5), datetime(2023, 3, 15, 12, 0))

    def test_ilegivel_e_vazio(self) -> None:
        self.assertIsNone(nz.parse_date("lixo"))
        self.assertIsNone(nz.parse_date(""))
        self.assertIsNone(nz.parse_date(None))

    def test_numero_fora_da_faixa_nao_e_data(self) -> None:
        self.assertIsNone(nz.parse_date(12))


class IdentificadorTests(unittest.TestCase):
    def test_nome(self) -> None:
        self.assertEqual(nz.normalize_name("  Loja   Centro "), "loja centro")
        self.assertEqual(nz.normalize_name("São JOÃO"), "sao joao")

    def test_cnpj(self) -> None:
        self.assertEqual(nz.normalize_tax_id("12.345.678/0001-90"), "12345678000190")
        self.assertEqual(nz.normalize_tax_id(12345678000190.0), "12345678000190")
        self.assertEqual(nz.normalize_tax_id(None), "")

    def test_format_cnpj(self) -> None:
        self.assertEqual(nz.format_cnpj("12345678000190"), "12.345.678/0001-90")


class ColumnMapTests(unittest.TestCase):
    def test_exato_sem_caixa_e_acento(self) -> None:
        cols = nz.ColumnMap.resolve(["NOME", "LOJA", "Início", "Valor IWOF"])
        self.assertEqual(cols.header("professional_name"), "NOME")
        self.assertEqual(cols.header("start_time"), "Início")
        self.assertEqual(cols.header("gross_amount"), "Valor IWOF")
        self.assertIsNone(cols.header("phone"))

    def test_substring_como_ultimo_recurso(self) -> None:
        cols = nz.ColumnMap.resolve(["Data Início do Turno", "Valor"])
        self.assertEqual(cols.header("start_time"), "Data Início do Turno")

    def test_sem_coluna_de_valor_aborta(self) -> None:
        with self.assertRaises(ErroConfiguracao):
            nz.ColumnMap.resolve(["Nome", "Loja"])


class PlanilhaTests(unittest.TestCase):
    HEADERS = ["Nome", "Loja", "Início", "Término", "Valor IWOF", "Fração de hora computada", "Ref Agendamento"]

    def _row(self, **kw):
        base = {
            "Nome": "Ana", "Loja": "loja centro", "Início": "05/03/2024 08:00",
            "Término": "05/03/2024 12:00", "Valor IWOF": "100,00",
            "Fração de hora computada": "4", "Ref Agendamento": "R1",
        }
        base.update(kw)
        return base

    def test_linha_normal(self) -> None:
        res = nz.normalizar_planilha(self.HEADERS, [self._row()])
        self.assertEqual(len(res.records), 1)
        rec = res.records[0]
        self.assertEqual(rec.row_number, 2)
        self.assertEqual(rec.store_name_raw, "LOJA CENTRO")
        self.assertEqual(rec.gross_amount, Decimal("100.00"))
        self.assertEqual(rec.duration_hours, Decimal("4"))
        self.assertEqual(rec.start_time, datetime(2024, 3, 5, 8, 0))
        self.assertEqual(rec.source_row["Nome"], "Ana")
        self.assertIsNone(rec.tax_id_raw)

    def test_linha_sem_loja_e_sem_ref_e_ignorada(self) -> None:
        rows = [self._row(), self._row(**{"Loja": "", "Ref Agendamento": ""})]
        res = nz.normalizar_planilha(self.HEADERS, rows)
        self.assertEqual(len(res.records), 1)
        self.assertEqual(res.skipped, 1)

    def test_valor_e_data_ilegiveis_nao_abortam(self) -> None:
        rows = [self._row(**{"Valor IWOF": "abc", "Início": "31/02/2024"})]
        res = nz.normalizar_planilha(self.HEADERS, rows)
        self.assertEqual(len(res.records), 1)
        self.assertEqual(res.records[0].gross_amount, Decimal("0"))
        self.assertIsNone(res.records[0].start_time)
        kinds = {i.kind for i in res.issues}
        self.assertIn(IssueKind.VALOR_INVALIDO, kinds)
        self.assertIn(IssueKind.DATA_INVALIDA, kinds)


if __name__ == "__main__":
    unittest.main()
