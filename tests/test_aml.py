"""Tests for the red-flag module: normalize, sources, ledger, rules, detectors, engine, metrics, pipeline."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from conftest import T0


def _default_rule(rule_id):
    from rifscan.aml.rules import load_default_rules
    return next(r for r in load_default_rules() if r.id == rule_id)


def _structuring_txs(make_tx):
    return [
        make_tx("9500.00", hours=0),
        make_tx("9800.00", hours=1),
        make_tx("9700.00", hours=2),
    ]


class TestNormalizeAmount:
    def test_brazilian_format(self):
        from rifscan.aml.normalize import normalize_amount
        assert str(normalize_amount("R$ 1.500,50")) == "1500.50"

    def test_integer_string(self):
        from rifscan.aml.normalize import normalize_amount
        assert str(normalize_amount("1500")) == "1500.00"

    def test_stable_under_renormalization(self):
        from rifscan.aml.normalize import normalize_amount
        once = normalize_amount("R$ 1.500,50")
        assert normalize_amount(str(once)) == once
        assert str(normalize_amount(str(once))) == "1500.50"

    def test_last_separator_is_decimal(self):
        from rifscan.aml.normalize import normalize_amount
        assert normalize_amount("1,500.50") == Decimal("1500.50")
        assert normalize_amount("1.234.567,89") == Decimal("1234567.89")

    def test_repeated_separator_is_thousands(self):
        from rifscan.aml.normalize import normalize_amount
        assert normalize_amount("1.500.000") == Decimal("1500000.00")
        assert normalize_amount("1,500,000") == Decimal("1500000.00")

    def test_lone_comma_is_decimal(self):
        from rifscan.aml.normalize import normalize_amount
        assert normalize_amount("12,5") == Decimal("12.50")

    def test_half_even_rounding(self):
        from rifscan.aml.normalize import normalize_amount
        assert normalize_amount("0.125") == Decimal("0.12")
        assert normalize_amount("0.135") == Decimal("0.14")

    def test_sign_dropped(self):
        from rifscan.aml.normalize import normalize_amount
        assert normalize_amount("-250,00") == Decimal("250.00")
        assert normalize_amount(-42) == Decimal("42.00")

    def test_numeric_inputs(self):
        from rifscan.aml.normalize import normalize_amount
        assert normalize_amount(10.1) == Decimal("10.10")
        assert normalize_amount(Decimal("3.333")) == Decimal("3.33")

    def test_amounts_beyond_default_precision(self):
        from rifscan.aml.normalize import normalize_amount
        big = "1" + "0" * 29
        assert str(normalize_amount("R$ " + big)) == big + ".00"
        assert str(normalize_amount(big + ",125")) == big + ".12"
        assert str(normalize_amount(Decimal("-" + big))) == big + ".00"

    def test_unparsable_defaults_to_zero(self):
        from rifscan.aml.normalize import normalize_amount, parse_amount
        assert parse_amount("abc") is None
        assert parse_amount(None) is None
        assert parse_amount(float("nan")) is None
        assert normalize_amount("abc") == Decimal("0.00")


class TestNormalizeDate:
    def test_day_first(self):
        from rifscan.aml.normalize import parse_date
        assert parse_date("05/03/2024") == datetime(2024, 3, 5, tzinfo=timezone.utc)
        assert parse_date("05-03-2024") == datetime(2024, 3, 5, tzinfo=timezone.utc)

    def test_iso_date_with_time(self):
        from rifscan.aml.normalize import parse_date
        dt = parse_date("2024-03-05 14:30")
        assert dt == datetime(2024, 3, 5, 14, 30, tzinfo=timezone.utc)

    def test_offset_converted_to_utc(self):
        from rifscan.aml.normalize import parse_date
        dt = parse_date("2024-03-05T10:00:00-03:00")
        assert dt == datetime(2024, 3, 5, 13, 0, tzinfo=timezone.utc)

    def test_unparsable_defaults_to_now(self):
        from rifscan.aml.normalize import normalize_date, parse_date
        assert parse_date("ontem") is None
        assert normalize_date("ontem", now=T0) == T0


class TestVocabulary:
    def test_methods(self):
        from rifscan.aml.model import Method
        from rifscan.aml.normalize import parse_method
        assert parse_method("Pix recebido") is Method.PIX
        assert parse_method("TED") is Method.WIRE_IMMEDIATE
        assert parse_method("TEF") is Method.WIRE_IMMEDIATE
        assert parse_method("DOC") is Method.WIRE_BATCH
        assert parse_method("Depósito em espécie") is Method.CASH
        assert parse_method("Saque") is Method.CASH
        assert parse_method("Cartão") is Method.CARD
        assert parse_method("Boleto") is Method.BILL
        assert parse_method("pombo correio") is None

    def test_types(self):
        from rifscan.aml.model import TxType
        from rifscan.aml.normalize import parse_type
        assert parse_type("Crédito") is TxType.CREDIT
        assert parse_type("ENTRADA") is TxType.CREDIT
        assert parse_type("Débito") is TxType.DEBIT
        assert parse_type("Saída") is TxType.DEBIT
        assert parse_type("???") is None

    def test_documents(self):
        from rifscan.aml.normalize import extract_document, normalize_document
        assert normalize_document("123.456.789-00") == "12345678900"
        assert extract_document("Pagamento a 12.345.678/0001-90 ref") == "12345678000190"
        assert extract_document("sem documento") == ""


class TestNormalizeRows:
    def _normalize(self, source, rows, case_id="c1", evidence_id="e1"):
        from rifscan.aml.normalize import normalize_rows
        from rifscan.aml.sources import coerce_rows
        return normalize_rows(coerce_rows(source, rows), case_id, evidence_id, now=T0)

    def test_keeps_flags_and_drops(self):
        rows = [
            {"date": "2024-03-01", "amount": "R$ 100,00", "type": "credito",
             "method": "PIX", "holderDocument": "111.111.111-11"},
            {"date": "2024-03-02", "amount": "n/a", "type": "debito"},
            {"description": "lixo"},
        ]
        result = self._normalize("json", rows)

        assert len(result.transactions) == 2
        assert result.dropped_rows == [2]
        first, second = result.transactions
        assert first.amount == Decimal("100.00")
        assert first.holder_document == "11111111111"
        assert first.defaulted_fields == ()
        assert second.amount == Decimal("0.00")
        assert second.defaulted_fields == ("amount",)
        assert result.defaulted_rows == 1
        assert result.warnings[0].to_dict()["field"] == "amount"

    def test_huge_amount_does_not_abort_batch(self):
        big = "1" + "0" * 29
        rows = [
            {"date": "2024-03-01", "amount": "R$ " + big, "type": "credito", "method": "PIX"},
            {"date": "2024-03-02", "amount": "10,00", "type": "debito", "method": "PIX"},
        ]
        result = self._normalize("json", rows)

        assert result.dropped_rows == []
        assert [str(t.amount) for t in result.transactions] == [big + ".00", "10.00"]
        assert "amount" not in result.transactions[0].defaulted_fields

    def test_missing_date_defaults_to_now(self):
        result = self._normalize("json", [{"amount": "10", "type": "credito"}])
        tx = result.transactions[0]
        assert tx.date == T0
        assert "date" in tx.defaulted_fields

    def test_unknown_type_and_method_default(self):
        from rifscan.aml.model import Method, TxType
        result = self._normalize("json", [
            {"date": "2024-03-01", "amount": "10", "type": "xyz", "method": "pombo correio"},
        ])
        tx = result.transactions[0]
        assert tx.type is TxType.DEBIT
        assert tx.method is Method.OTHER
        assert set(tx.defaulted_fields) == {"type", "method"}

    def test_negative_amount_hints_debit(self):
        from rifscan.aml.model import TxType
        result = self._normalize("json", [{"date": "2024-03-01", "amount": "-50,00"}])
        tx = result.transactions[0]
        assert tx.type is TxType.DEBIT
        assert tx.amount == Decimal("50.00")
        assert tx.defaulted_fields == ()

    def test_ids_are_deterministic(self):
        rows = [{"date": "2024-03-01", "amount": "10"}, {"date": "2024-03-02", "amount": "20"}]
        a = self._normalize("json", rows)
        b = self._normalize("json", rows)
        assert [t.id for t in a.transactions] == [t.id for t in b.transactions]
        assert len({t.id for t in a.transactions}) == 2

    def test_explicit_id_kept(self):
        result = self._normalize("json", [{"id": "abc", "date": "2024-03-01", "amount": "10"}])
        assert result.transactions[0].id == "abc"

    def test_holder_from_description(self):
        result = self._normalize("json", [
            {"date": "2024-03-01", "amount": "10", "description": "Titular 123.456.789-00"},
        ])
        assert result.transactions[0].holder_document == "12345678900"


class TestSources:
    def test_unsupported_source(self):
        from rifscan.aml.errors import IngestionError
        from rifscan.aml.sources import coerce_rows
        with pytest.raises(IngestionError):
            coerce_rows("pdf", [])
        with pytest.raises(IngestionError):
            coerce_rows("json", "not a list")

    def test_source_for_filename(self):
        from rifscan.aml.errors import IngestionError
        from rifscan.aml.sources import source_for_filename
        assert source_for_filename("rif.CSV") == "delimited"
        assert source_for_filename("entidades.xlsx") == "spreadsheet"
        assert source_for_filename("dump.json") == "json"
        with pytest.raises(IngestionError):
            source_for_filename("extrato.pdf")

    def test_delimited_header_mapping(self):
        from rifscan.aml.model import Method, TxType
        from rifscan.aml.normalize import normalize_rows
        from rifscan.aml.sources import coerce_rows
        rows = [{
            "Data": "01/03/2024", "Valor": "1.000,00", "Tipo": "Crédito",
            "Contraparte": "ACME", "Documento": "12.345.678/0001-90", "Descrição": "PIX recebido",
        }]
        tx = normalize_rows(coerce_rows("delimited", rows), "c1").transactions[0]
        assert tx.amount == Decimal("1000.00")
        assert tx.type is TxType.CREDIT
        assert tx.method is Method.PIX
        assert tx.counterparty == "ACME"
        assert tx.counterparty_document == "12345678000190"

    def test_delimited_positional_and_pipe_lines(self):
        from rifscan.aml.model import Method, TxType
        from rifscan.aml.normalize import normalize_rows
        from rifscan.aml.sources import coerce_rows
        rows = [
            "05/03/2024;250,00;debito;Fulano;Saque;especie",
            "05/03/2024|CREDITO|1.234,56|Beltrano|123.456.789-00|TED recebida|TED",
        ]
        semi, pipe = normalize_rows(coerce_rows("delimited", rows), "c1").transactions
        assert semi.amount == Decimal("250.00")
        assert semi.type is TxType.DEBIT
        assert semi.method is Method.CASH
        assert pipe.amount == Decimal("1234.56")
        assert pipe.type is TxType.CREDIT
        assert pipe.method is Method.WIRE_IMMEDIATE
        assert pipe.counterparty_document == "12345678900"

    def test_spreadsheet_entity_row(self):
        from rifscan.aml.model import TxType
        from rifscan.aml.normalize import normalize_rows
        from rifscan.aml.sources import coerce_rows, rows_from_table
        table = [
            ["ORDEM", "TITULAR CPF/CNPJ", "REMETENTE/BENEFICIARIO CPF/CNPJ",
             "REMETENTE/BENEFICIARIO NOME", "REMETENTE OU BENEFICIARIO?", "VALOR", "DATA/PERIODO"],
            [1, "111.111.111-11", "222.222.222-22", "FULANO", "REMETENTE", "R$ 5.000,00",
             "01/02/2024 a 28/02/2024"],
            [2, "111.111.111-11", "333.333.333-33", "CICLANO", "BENEFICIÁRIO", "PREENCHER MANUALMENTE",
             "01/02/2024"],
            [None, None, None, None, None, None, None],
        ]
        result = normalize_rows(coerce_rows("spreadsheet", rows_from_table(table)), "c1")
        credit, debit = result.transactions
        assert credit.type is TxType.CREDIT
        assert credit.amount == Decimal("5000.00")
        assert credit.holder_document == "11111111111"
        assert credit.counterparty_document == "22222222222"
        assert credit.date == datetime(2024, 2, 1, tzinfo=timezone.utc)
        assert debit.type is TxType.DEBIT
        assert debit.amount == Decimal("0.00")
        assert debit.defaulted_fields == ("amount",)

    def test_report_text(self):
        from rifscan.aml.model import TxType
        from rifscan.aml.normalize import normalize_rows
        from rifscan.aml.sources import coerce_rows, report_text_rows
        text = "\n".join([
            "Titular(es): 123.456.789-00 - FULANO DE TAL",
            "Período: 01/01/2024 a 31/03/2024",
            "CRÉDITOS:",
            "- 45,50% (R$ 150.000,00 em 12 transações) via CPF 987.654.321-00 (CICLANO)",
            "DÉBITOS:",
            "- 30,00% (R$ 80.000,00 em 5 transações) para CNPJ 12.345.678/0001-90 "
            "(EMPRESA X LTDA), banco 341 - ITAU, agência 1234 e conta 56789-0",
            "ENVOLVIDOS:",
            "- qualquer coisa",
        ])
        rows = report_text_rows(text)
        assert len(rows) == 2

        credit, debit = normalize_rows(coerce_rows("report", rows), "c1").transactions
        assert credit.type is TxType.CREDIT
        assert credit.amount == Decimal("150000.00")
        assert credit.holder_document == "12345678900"
        assert credit.counterparty_document == "98765432100"
        assert credit.counterparty == "CICLANO"
        assert credit.date == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert debit.type is TxType.DEBIT
        assert debit.amount == Decimal("80000.00")
        assert (debit.bank, debit.agency, debit.account) == ("341", "1234", "56789-0")


class TestLedger:
    def test_merge_by_id(self, make_tx):
        from rifscan.aml.ledger import Ledger
        ledger = Ledger("case-1")
        assert ledger.merge([make_tx(id="a"), make_tx(id="b")]) == {"inserted": 2, "updated": 0}
        counts = ledger.merge([make_tx("999.00", id="a"), make_tx(id="c")])
        assert counts == {"inserted": 1, "updated": 1}
        assert len(ledger) == 3
        assert "c" in ledger
        assert ledger.get("a").amount == Decimal("999.00")

    def test_sorted_by_date_then_id(self, make_tx):
        from rifscan.aml.ledger import Ledger
        ledger = Ledger("case-1", [
            make_tx(hours=5, id="z"), make_tx(hours=1, id="y"), make_tx(hours=1, id="x"),
        ])
        assert [t.id for t in ledger.sorted()] == ["x", "y", "z"]
        assert isinstance(ledger.snapshot(), tuple)

    def test_rejects_other_case(self, make_tx):
        from rifscan.aml.ledger import Ledger
        with pytest.raises(ValueError):
            Ledger("case-1").merge([make_tx(case_id="case-2")])


class TestRules:
    def test_defaults(self):
        from rifscan.aml.rules import load_default_rules
        rules = load_default_rules()
        assert [r.id for r in rules] == [
            "fracionamento", "circularidade", "fan-in-out", "perfil-incompativel",
            "especie-intensa", "transacao-atipica", "sequencia-ted", "valor-redondo",
        ]
        frac = rules[0]
        assert frac.severity == "high"
        assert frac.parameters == {"threshold": 10000, "windowHours": 24, "minTransactions": 3}
        assert rules[1].parameters["similarityThreshold"] == 0.9

    def test_no_shared_state_between_loads(self):
        from rifscan.aml.rules import load_default_rules
        first = load_default_rules()
        first[0].parameters["threshold"] = 1
        assert load_default_rules()[0].parameters["threshold"] == 10000

    def test_rules_for_case_fills_missing(self):
        from rifscan.aml.model import Rule
        from rifscan.aml.rules import load_default_rules, rules_for_case
        stored = [Rule("fracionamento", enabled=False, severity="high", parameters={"threshold": 5000})]
        rules = rules_for_case(stored, load_default_rules())
        assert len(rules) == 8
        frac = rules[0]
        assert frac.enabled is False
        assert frac.parameters == {"threshold": 5000, "windowHours": 24, "minTransactions": 3}

    def test_update_rule(self):
        from rifscan.aml.rules import load_default_rules, update_rule
        rules = update_rule(load_default_rules(), "especie-intensa",
                            {"enabled": False, "parameters": {"percentage": 50}})
        rule = next(r for r in rules if r.id == "especie-intensa")
        assert rule.enabled is False
        assert rule.parameters == {"threshold": 50000, "percentage": 50}

    def test_update_rule_errors(self):
        from rifscan.aml.rules import load_default_rules, update_rule
        rules = load_default_rules()
        with pytest.raises(KeyError):
            update_rule(rules, "nope", {"enabled": False})
        with pytest.raises(ValueError):
            update_rule(rules, "fracionamento", {"severity": "critical"})
        with pytest.raises(ValueError):
            update_rule(rules, "fracionamento", {"label": "x"})


class TestDetectors:
    def test_structuring(self, make_tx):
        from rifscan.aml.detectors import detect_structuring
        txs = _structuring_txs(make_tx)
        alerts = detect_structuring(txs, _default_rule("fracionamento"), "case-1")
        assert len(alerts) == 1
        alert = alerts[0]
        assert alert.rule_id == "fracionamento"
        assert alert.severity == "high"
        assert set(alert.transaction_ids) == {t.id for t in txs}
        assert alert.evidence_count == 3
        assert alert.score == 50.0

    def test_structuring_ignores_amounts_at_threshold(self, make_tx):
        from rifscan.aml.detectors import detect_structuring
        txs = [make_tx("9500", hours=0), make_tx("10000", hours=1), make_tx("9700", hours=2)]
        assert detect_structuring(txs, _default_rule("fracionamento"), "case-1") == []

    def test_structuring_ignores_debits_and_wires(self, make_tx):
        from rifscan.aml.detectors import detect_structuring
        txs = [
            make_tx("9500", hours=0, type="debit"),
            make_tx("9800", hours=1, method="wire-immediate"),
            make_tx("9700", hours=2),
        ]
        assert detect_structuring(txs, _default_rule("fracionamento"), "case-1") == []

    def test_structuring_overlapping_windows(self, make_tx):
        from rifscan.aml.detectors import detect_structuring
        txs = [make_tx("9000", hours=h) for h in range(5)]
        ids = [t.id for t in txs]
        alerts = detect_structuring(txs, _default_rule("fracionamento"), "case-1")
        assert [a.transaction_ids for a in alerts] == [tuple(ids[0:5]), tuple(ids[1:5]), tuple(ids[2:5])]
        assert [a.score for a in alerts] == [83.33, 66.67, 50.0]
        assert len({a.id for a in alerts}) == 3

    def test_circularity(self, make_tx):
        from rifscan.aml.detectors import detect_circularity
        txs = [
            make_tx("1000", hours=0, type="debit", method="wire-immediate", holder="A", counterparty_document="B"),
            make_tx("995", hours=10, type="debit", method="wire-immediate", holder="B", counterparty_document="C"),
            make_tx("1005", hours=40, type="debit", method="wire-immediate", holder="C", counterparty_document="A"),
        ]
        alerts = detect_circularity(txs, _default_rule("circularidade"), "case-1")
        assert len(alerts) == 1
        assert alerts[0].score >= 90
        assert alerts[0].transaction_ids == tuple(t.id for t in txs)

    def test_circularity_outside_window(self, make_tx):
        from rifscan.aml.detectors import detect_circularity
        txs = [
            make_tx("1000", hours=0, type="debit", holder="A", counterparty_document="B"),
            make_tx("995", hours=10, type="debit", holder="B", counterparty_document="C"),
            make_tx("1005", hours=200, type="debit", holder="C", counterparty_document="A"),
        ]
        assert detect_circularity(txs, _default_rule("circularidade"), "case-1") == []

    def test_circularity_dissimilar_amounts(self, make_tx):
        from rifscan.aml.detectors import detect_circularity
        txs = [
            make_tx("1000", hours=0, type="debit", holder="A", counterparty_document="B"),
            make_tx("500", hours=10, type="debit", holder="B", counterparty_document="C"),
            make_tx("1000", hours=20, type="debit", holder="C", counterparty_document="A"),
        ]
        assert detect_circularity(txs, _default_rule("circularidade"), "case-1") == []

    def test_fan_in_out(self, make_tx):
        from rifscan.aml.detectors import detect_fan_in_out
        txs = [make_tx("100", hours=i, counterparty_document=f"cp{i}") for i in range(10)]
        alerts = detect_fan_in_out(txs, _default_rule("fan-in-out"), "case-1")
        assert len(alerts) == 1
        assert alerts[0].evidence_count == 10
        assert alerts[0].score == 60.0

    def test_fan_in_out_repeated_counterparties(self, make_tx):
        from rifscan.aml.detectors import detect_fan_in_out
        txs = [make_tx("100", hours=i, counterparty_document=f"cp{i % 3}") for i in range(12)]
        assert detect_fan_in_out(txs, _default_rule("fan-in-out"), "case-1") == []

    def test_profile_drift(self, make_tx):
        from rifscan.aml.detectors import detect_profile_drift
        txs = [make_tx("100", hours=24 * i) for i in range(9)]
        txs.append(make_tx("1000", hours=24 * 9))
        alerts = detect_profile_drift(txs, _default_rule("perfil-incompativel"), "case-1")
        assert len(alerts) == 1
        assert alerts[0].transaction_ids == (txs[-1].id,)
        assert alerts[0].score == 100.0

    def test_profile_drift_needs_history(self, make_tx):
        from rifscan.aml.detectors import detect_profile_drift
        txs = [make_tx("100", hours=i) for i in range(8)] + [make_tx("5000", hours=9)]
        assert detect_profile_drift(txs, _default_rule("perfil-incompativel"), "case-1") == []

    def test_profile_drift_uses_unrounded_average(self, make_tx):
        from rifscan.aml.detectors import detect_profile_drift
        from rifscan.aml.model import Rule
        rule = Rule("perfil-incompativel", parameters={"multiplier": 10, "windowHours": 720})

        def ledger(latest):
            # baseline mean 9.32 / 7 = 1.3314...
            amounts = ["1.33"] * 6 + ["1.34", "1.00", "1.00", latest]
            return [make_tx(a, hours=i) for i, a in enumerate(amounts)]

        assert detect_profile_drift(ledger("13.31"), rule, "case-1") == []
        alerts = detect_profile_drift(ledger("13.32"), rule, "case-1")
        assert len(alerts) == 1
        assert "R$ 1.33" in alerts[0].explanation

    def test_profile_drift_baseline_is_first_seventy_percent(self, make_tx):
        from rifscan.aml.detectors import detect_profile_drift
        # 90 transactions: the first 63 are the baseline, so index 62 is history
        txs = [make_tx("600" if i == 62 else "100", hours=i) for i in range(90)]
        assert detect_profile_drift(txs, _default_rule("perfil-incompativel"), "case-1") == []

        txs = [make_tx("600" if i == 63 else "100", hours=i) for i in range(90)]
        alerts = detect_profile_drift(txs, _default_rule("perfil-incompativel"), "case-1")
        assert [a.transaction_ids for a in alerts] == [(txs[63].id,)]

    def test_large_amounts_do_not_fail_detectors(self, make_tx):
        from rifscan.aml.engine import run_rules
        from rifscan.aml.rules import load_default_rules
        big = "1" + "0" * 29
        txs = [make_tx("100", hours=24 * i) for i in range(9)]
        txs.append(make_tx(big, hours=24 * 9, method="cash"))
        result = run_rules(txs, load_default_rules(), "case-1")
        assert result.failed == {}
        assert {"perfil-incompativel", "especie-intensa", "transacao-atipica"} <= {a.rule_id for a in result.alerts}

    def test_cash_intensity(self, make_tx):
        from rifscan.aml.detectors import detect_cash_intensity
        rule = _default_rule("especie-intensa")
        cash_a = make_tx("30000", hours=0, method="cash")
        cash_b = make_tx("25000", hours=1, method="cash")
        pix = make_tx("5000", hours=2, method="PIX")

        alerts = detect_cash_intensity([cash_a, cash_b, pix], rule, "case-1")
        assert len(alerts) == 1
        assert set(alerts[0].transaction_ids) == {cash_a.id, cash_b.id}
        assert alerts[0].score == 91.67

        assert detect_cash_intensity([cash_a, pix], rule, "case-1") == []

    def test_atypical_amount(self, make_tx):
        from rifscan.aml.detectors import detect_atypical_amount
        txs = [make_tx("1500000"), make_tx("999999.99")]
        alerts = detect_atypical_amount(txs, _default_rule("transacao-atipica"), "case-1")
        assert len(alerts) == 1
        assert alerts[0].score == 75.0

    def test_wire_sequence(self, make_tx):
        from rifscan.aml.detectors import detect_wire_sequence
        txs = [make_tx("100", hours=h, method="wire-immediate", type="debit") for h in (0, 1, 2)]
        txs.append(make_tx("100", hours=30, method="wire-immediate", type="debit"))
        alerts = detect_wire_sequence(txs, _default_rule("sequencia-ted"), "case-1")
        assert len(alerts) == 1
        assert alerts[0].evidence_count == 3
        assert alerts[0].score == 40.0

    def test_round_values(self, make_tx):
        from rifscan.aml.detectors import detect_round_values
        txs = [make_tx("100000"), make_tx("100000.50"), make_tx("40000")]
        alerts = detect_round_values(txs, _default_rule("valor-redondo"), "case-1")
        assert len(alerts) == 1
        assert alerts[0].transaction_ids == (txs[0].id,)
        assert alerts[0].score == 30.0

    def test_malformed_parameters(self, make_tx):
        from rifscan.aml.detectors import detect_structuring
        from rifscan.aml.errors import DetectorError
        from rifscan.aml.model import Rule
        rule = Rule("fracionamento", parameters={"threshold": "abc", "windowHours": 24, "minTransactions": 3})
        with pytest.raises(DetectorError) as exc:
            detect_structuring(_structuring_txs(make_tx), rule, "case-1")
        assert exc.value.rule_id == "fracionamento"

        rule = Rule("fracionamento", parameters={"threshold": 10000, "windowHours": 24})
        with pytest.raises(DetectorError):
            detect_structuring(_structuring_txs(make_tx), rule, "case-1")


class TestEngine:
    def test_runs_all_default_rules(self, make_tx):
        from rifscan.aml.engine import run_rules
        from rifscan.aml.rules import load_default_rules
        result = run_rules(_structuring_txs(make_tx), load_default_rules(), "case-1")
        assert len(result.succeeded) == 8
        assert result.failed == {}
        assert [a.rule_id for a in result.alerts] == ["fracionamento"]

    def test_failure_isolation(self, make_tx):
        from rifscan.aml.detectors import DETECTORS
        from rifscan.aml.engine import run_rules
        from rifscan.aml.rules import load_default_rules

        def boom(transactions, rule, case_id):
            raise RuntimeError("exploded")

        registry = dict(DETECTORS)
        registry["circularidade"] = boom
        result = run_rules(_structuring_txs(make_tx), load_default_rules(), "case-1", detectors=registry)
        assert list(result.failed) == ["circularidade"]
        assert "exploded" in result.failed["circularidade"]
        assert "fracionamento" in result.succeeded
        assert len(result.alerts) == 1

    def test_bad_parameters_isolated(self, make_tx):
        from rifscan.aml.engine import run_rules
        from rifscan.aml.rules import load_default_rules, update_rule
        rules = update_rule(load_default_rules(), "fracionamento", {"parameters": {"windowHours": "x"}})
        result = run_rules(_structuring_txs(make_tx), rules, "case-1")
        assert "fracionamento" in result.failed
        assert len(result.succeeded) == 7
        assert result.alerts == []

    @pytest.mark.parametrize("parallel", [False, True])
    def test_broken_rule_does_not_hide_other_alerts(self, make_tx, parallel):
        from rifscan.aml.engine import run_rules
        from rifscan.aml.rules import load_default_rules, update_rule
        txs = [
            make_tx("9500", hours=0, holder="A"),
            make_tx("9800", hours=1, holder="A"),
            make_tx("9700", hours=2, holder="A"),
        ]
        txs += [
            make_tx("100", hours=i, type="debit", method="card", holder="B", counterparty_document=f"cp{i}")
            for i in range(10)
        ]
        txs += [make_tx("100", hours=24 * i, method="card", holder="C") for i in range(9)]
        txs.append(make_tx("1000", hours=24 * 9, method="card", holder="C"))
        txs += [
            make_tx("30000", hours=0, method="cash", holder="D"),
            make_tx("25000", hours=1, method="cash", holder="D"),
            make_tx("5000", hours=2, holder="D"),
        ]
        rules = update_rule(load_default_rules(), "circularidade", {"parameters": {"similarityThreshold": "abc"}})

        result = run_rules(txs, rules, "case-1", parallel=parallel, max_workers=4)
        assert list(result.failed) == ["circularidade"]
        assert len(result.succeeded) == 7
        fired = {a.rule_id for a in result.alerts}
        assert {"fracionamento", "fan-in-out", "perfil-incompativel", "especie-intensa"} <= fired

    def test_disabled_and_unknown_rules_skipped(self, make_tx):
        from rifscan.aml.engine import run_rules
        from rifscan.aml.model import Rule
        from rifscan.aml.rules import load_default_rules, update_rule
        rules = update_rule(load_default_rules(), "fracionamento", {"enabled": False})
        rules.append(Rule("sem-detector"))
        result = run_rules(_structuring_txs(make_tx), rules, "case-1")
        assert result.skipped == ["fracionamento", "sem-detector"]
        assert result.alerts == []

    def test_parallel_matches_sequential(self, make_tx):
        from rifscan.aml.engine import run_rules
        from rifscan.aml.rules import load_default_rules
        txs = _structuring_txs(make_tx) + [
            make_tx("30000", hours=3, method="cash"),
            make_tx("25000", hours=4, method="cash"),
            make_tx("100000", hours=5, method="wire-immediate", type="debit"),
        ]
        seq = run_rules(txs, load_default_rules(), "case-1")
        par = run_rules(list(reversed(txs)), load_default_rules(), "case-1", parallel=True, max_workers=3)
        assert [a.fingerprint() for a in seq.alerts] == [a.fingerprint() for a in par.alerts]
        assert [a.id for a in seq.alerts] == [a.id for a in par.alerts]
        assert len(seq.alerts) >= 2


class TestMetrics:
    def test_exact_balance(self, make_tx):
        from rifscan.aml.metrics import compute_metrics
        txs = [make_tx("0.10", hours=i) for i in range(10)]
        txs.append(make_tx("0.30", hours=11, type="debit"))
        m = compute_metrics(txs)
        assert m.total_credits == Decimal("1.00")
        assert m.total_debits == Decimal("0.30")
        assert m.balance == Decimal("0.70")
        assert m.balance == m.total_credits - m.total_debits
        assert m.transaction_count == 11

    def test_average_ticket(self, make_tx):
        from rifscan.aml.metrics import average_ticket
        assert average_ticket([make_tx("10"), make_tx("20", type="debit"), make_tx("0.01")]) == Decimal("10.00")
        assert average_ticket([]) == Decimal("0.00")

    def test_totals_beyond_default_precision(self, make_tx):
        from rifscan.aml.metrics import compute_metrics
        big = "1" + "0" * 29
        txs = [
            make_tx(big, counterparty="ACME"),
            make_tx("10", hours=1, counterparty="ACME"),
            make_tx("0.01", hours=2, type="debit"),
        ]
        m = compute_metrics(txs)
        assert str(m.total_credits) == "1" + "0" * 27 + "10.00"
        assert str(m.balance) == "1" + "0" * 27 + "09.99"
        assert str(m.average_ticket) == "3" * 28 + "6.67"
        assert str(m.top_counterparties[0]["amount"]) == "1" + "0" * 27 + "10.00"
        assert str(m.period_series[0]["credits"]) == "1" + "0" * 27 + "10.00"

    def test_non_finite_min_amount_rejected(self, make_tx):
        from rifscan.aml.metrics import MetricsFilter, compute_metrics
        for value in ("NaN", "sNaN", "Infinity", "-Infinity"):
            with pytest.raises(ValueError):
                compute_metrics([make_tx("10")], MetricsFilter(min_amount=Decimal(value)))

    def test_negative_top_n_rejected(self, make_tx):
        from rifscan.aml.metrics import compute_metrics
        with pytest.raises(ValueError):
            compute_metrics([make_tx("10")], top_n=-1)

    def test_top_counterparties_and_methods(self, make_tx):
        from rifscan.aml.metrics import compute_metrics
        txs = [
            make_tx("100", counterparty="ACME"),
            make_tx("300", counterparty="BETA", method="cash"),
            make_tx("250", counterparty="ACME"),
        ]
        m = compute_metrics(txs, top_n=1)
        assert m.top_counterparties == [{"name": "ACME", "document": "", "amount": Decimal("350.00"), "count": 2}]
        assert [d["method"] for d in m.method_distribution] == ["PIX", "cash"]

    def test_period_series_and_heatmap(self, make_tx):
        from rifscan.aml.metrics import compute_metrics
        txs = [make_tx("10", hours=0), make_tx("5", hours=1, type="debit"), make_tx("7", hours=24)]
        m = compute_metrics(txs)
        assert m.period_series == [
            {"date": "2024-03-04", "credits": Decimal("10.00"), "debits": Decimal("5.00")},
            {"date": "2024-03-05", "credits": Decimal("7.00"), "debits": Decimal("0.00")},
        ]
        # 2024-03-04 is a Monday
        assert {"day": 0, "hour": 10, "count": 1} in m.time_heatmap
        assert {"day": 1, "hour": 10, "count": 1} in m.time_heatmap

    def test_filters(self, make_tx):
        from rifscan.aml.metrics import MetricsFilter, compute_metrics
        from rifscan.aml.model import Method
        txs = [
            make_tx("10", hours=0, counterparty="Antigo"),
            make_tx("500", hours=24 * 20, counterparty="ACME Ltda", method="cash"),
            make_tx("50", hours=24 * 25, counterparty="Outro"),
        ]
        assert compute_metrics(txs, MetricsFilter(time_range="7d")).transaction_count == 2
        assert compute_metrics(txs, MetricsFilter(min_amount=Decimal("50"))).transaction_count == 2
        assert compute_metrics(txs, MetricsFilter(method=Method.CASH)).transaction_count == 1
        assert compute_metrics(txs, MetricsFilter(counterparty="acme")).total_credits == Decimal("500.00")
        start = T0 + timedelta(days=1)
        assert compute_metrics(txs, MetricsFilter(start=start)).transaction_count == 2

    def test_invalid_time_range(self):
        from rifscan.aml.metrics import parse_time_range
        assert parse_time_range("all") is None
        assert parse_time_range("1y") == timedelta(days=365)
        with pytest.raises(ValueError):
            parse_time_range("forever")

    def test_to_dict_renders_strings(self, make_tx):
        from rifscan.aml.metrics import compute_metrics
        d = compute_metrics([make_tx("1.5")]).to_dict()
        assert d["total_credits"] == "1.50"
        assert d["balance"] == "1.50"


def _pipeline_rows():
    return [
        {"date": "2024-03-04 10:00", "amount": "9.500,00", "type": "credito", "method": "PIX",
         "holderDocument": "111.111.111-11"},
        {"date": "2024-03-04 11:00", "amount": "9.800,00", "type": "credito", "method": "PIX",
         "holderDocument": "111.111.111-11"},
        {"date": "2024-03-04 12:00", "amount": "9.700,00", "type": "credito", "method": "PIX",
         "holderDocument": "111.111.111-11"},
        {"date": "2024-03-05", "amount": "abc", "type": "debito", "holderDocument": "111.111.111-11"},
        {"description": "linha vazia"},
    ]


class TestPipeline:
    def test_ingest_report(self, memory_store):
        from rifscan.aml.pipeline import ingest_rows
        messages = []
        report = ingest_rows("case-1", _pipeline_rows(), "json", "rif.json", memory_store, log_cb=messages.append)
        assert report.accepted == 4
        assert report.inserted == 4
        assert report.dropped_rows == [4]
        assert report.defaulted_rows == 1
        assert report.ledger_size == 4
        assert messages
        assert memory_store.audit[-1]["action"] == "ingest"

    def test_reingest_is_idempotent(self, memory_store):
        from rifscan.aml.pipeline import ingest_rows
        ingest_rows("case-1", _pipeline_rows(), "json", "rif.json", memory_store)
        again = ingest_rows("case-1", _pipeline_rows(), "json", "rif.json", memory_store)
        assert again.inserted == 0
        assert again.updated == 4
        assert len(memory_store.get_ledger("case-1")) == 4

    def test_unsupported_source_writes_nothing(self, memory_store):
        from rifscan.aml.errors import IngestionError
        from rifscan.aml.pipeline import ingest_rows
        with pytest.raises(IngestionError):
            ingest_rows("case-1", _pipeline_rows(), "pdf", "x.pdf", memory_store)
        assert len(memory_store.get_ledger("case-1")) == 0

    def test_analysis_is_idempotent(self, memory_store):
        from rifscan.aml.pipeline import ingest_rows, run_analysis
        ingest_rows("case-1", _pipeline_rows(), "json", "rif.json", memory_store)
        first = run_analysis("case-1", memory_store, parallel=False)
        second = run_analysis("case-1", memory_store, parallel=True)

        assert [a.rule_id for a in first.alerts] == ["fracionamento"]
        assert first.defaulted_rows == 1
        assert first.transaction_count == 4
        assert [a.fingerprint() for a in first.alerts] == [a.fingerprint() for a in second.alerts]
        assert [a.id for a in memory_store.get_alerts("case-1")] == [a.id for a in second.alerts]

    def test_rules_stored_once_and_updated(self, memory_store):
        from rifscan.aml.pipeline import case_rules, ingest_rows, run_analysis, update_rule
        assert memory_store.get_rules("case-1") is None
        rules = case_rules("case-1", memory_store)
        assert len(memory_store.get_rules("case-1")) == len(rules) == 8

        ingest_rows("case-1", _pipeline_rows(), "json", "rif.json", memory_store)
        rule = update_rule("case-1", "fracionamento", {"enabled": False}, memory_store)
        assert rule.enabled is False
        report = run_analysis("case-1", memory_store)
        assert report.alerts == []
        assert "fracionamento" in report.skipped

    def test_failed_rule_reported(self, memory_store):
        from rifscan.aml.pipeline import ingest_rows, run_analysis, update_rule
        ingest_rows("case-1", _pipeline_rows(), "json", "rif.json", memory_store)
        update_rule("case-1", "circularidade", {"parameters": {"similarityThreshold": 7}}, memory_store)
        report = run_analysis("case-1", memory_store)
        assert list(report.failed) == ["circularidade"]
        assert [a.rule_id for a in report.alerts] == ["fracionamento"]

    def test_persistence_failure_keeps_previous_alerts(self, memory_store):
        from rifscan.aml.errors import PersistenceError
        from rifscan.aml.pipeline import ingest_rows, run_analysis
        from rifscan.aml.store import MemoryCaseStore

        ingest_rows("case-1", _pipeline_rows(), "json", "rif.json", memory_store)
        previous = run_analysis("case-1", memory_store).alerts

        class BrokenStore(MemoryCaseStore):
            def put_alerts(self, case_id, alerts):
                raise PersistenceError("disk full")

        broken = BrokenStore()
        broken._ledgers = memory_store._ledgers
        broken._alerts = memory_store._alerts
        with pytest.raises(PersistenceError):
            run_analysis("case-1", broken)
        assert broken.get_alerts("case-1") == previous

    def test_metrics_and_report_context(self, memory_store):
        from rifscan.aml.pipeline import case_metrics, ingest_rows, report_context, run_analysis
        ingest_rows("case-1", _pipeline_rows(), "json", "rif.json", memory_store)
        run_analysis("case-1", memory_store)

        metrics = case_metrics("case-1", memory_store)
        assert metrics.total_credits == Decimal("29000.00")
        assert metrics.total_debits == Decimal("0.00")

        text = report_context("case-1", memory_store)
        assert "R$ 29,000.00" in text
        assert "fracionamento" in text
        assert "ALERTAS (1)" in text
