"""
Tests unitaires du moteur de décompte annuel.

Couvre les expressions (quote-part, solde, statut), le calcul complet sur un
immeuble de trois propriétaires et les cas limites (millièmes nuls,
propriétaire inconnu, montants illisibles).
"""

import logging
from datetime import date

import pandera.errors
import polars as pl
import pytest

from coprocore.core.erreurs import ProprietaireIntrouvable
from coprocore.core.models import DecompteAnnuelModele
from coprocore.core.pipelines.decompte import (
    DecompteAnnuel,
    calculer_decompte_proprietaire,
    calculer_decomptes,
    calculer_totaux_immeuble,
    expr_quote_part,
    expr_solde_fin,
    expr_statut_solde,
    preparer_proprietaires,
    resume_immeuble,
    verifier_total_milliemes,
)


def _mouvements_scenario(depot: float) -> pl.LazyFrame:
    """Un propriétaire A (300/1000), 1000 € de charges communes, un dépôt de A."""
    return pl.LazyFrame({
        "transaction_id": ["C1", "D1"],
        "date_transaction": [date(2024, 3, 1), date(2024, 4, 1)],
        "montant": [-1000.0, depot],
        "type": ["charge", "versement"],
        "description": ["Entretien chaudière", "Provision"],
        "proprietaire_id": [None, "A"],
    })


@pytest.fixture
def proprietaires_scenario():
    return pl.LazyFrame({
        "proprietaire_id": ["A", "B"],
        "nom": ["Albert", "Bernard"],
        "milliemes": [300, 700],
    })


# =========================================================================
# EXPRESSIONS
# =========================================================================


def test_expr_quote_part():
    df = pl.LazyFrame({"milliemes": [300, 500, 200]})

    result = df.select(expr_quote_part().alias("quote_part")).collect()

    assert result["quote_part"].to_list() == pytest.approx([0.3, 0.5, 0.2])


def test_expr_quote_part_total_nul():
    """Aucune division par zéro : quote-part nulle pour tous."""
    df = pl.LazyFrame({"milliemes": [0, 0]})

    result = df.select(expr_quote_part().alias("quote_part")).collect()

    assert result["quote_part"].to_list() == [0.0, 0.0]


def test_expr_solde_fin_et_statut():
    df = pl.LazyFrame({
        "solde_debut": [50.0, 50.0, 0.0],
        "depots": [400.0, 100.0, 20.0],
        "charges_communes": [300.0, 300.0, 15.0],
        "frais": [0.0, 0.0, 5.0],
        "ajustements": [0.0, 0.0, 0.0],
    })

    result = (
        df
        .with_columns(expr_solde_fin().alias("solde_fin"))
        .with_columns(expr_statut_solde().alias("statut"))
        .collect()
    )

    assert result["solde_fin"].to_list() == pytest.approx([150.0, -150.0, 0.0])
    # Un solde nul est à jour
    assert result["statut"].to_list() == ["a_jour", "attention", "a_jour"]


def test_preparer_proprietaires_nombre_parts_prioritaire():
    df = pl.LazyFrame({
        "proprietaire_id": [1, 2],
        "nom": ["A", None],
        "milliemes": [100, None],
        "nombre_parts": [None, 40],
    })

    result = preparer_proprietaires(df).collect()

    assert result["proprietaire_id"].to_list() == ["1", "2"]
    assert result["milliemes"].to_list() == [100, 40]
    assert result["nom"].to_list() == ["A", ""]
    assert result["prenom"].to_list() == [None, None]


def test_preparer_proprietaires_identifiant_en_double():
    df = pl.LazyFrame({
        "proprietaire_id": ["P1", "P1"],
        "nom": ["Dupont", "Durand"],
        "milliemes": [500, 500],
    })

    with pytest.raises(pandera.errors.SchemaError):
        preparer_proprietaires(df)


def test_calculer_decomptes_mouvement_sans_type(proprietaires_lf):
    transactions = pl.LazyFrame({
        "transaction_id": ["T1"],
        "date_transaction": [date(2024, 5, 1)],
        "montant": [-80.0],
        "type": [None],
    }, schema={"transaction_id": pl.Utf8, "date_transaction": pl.Date, "montant": pl.Float64, "type": pl.Utf8})

    with pytest.raises(pandera.errors.SchemaError):
        calculer_decomptes(transactions, proprietaires_lf, 2024)


# =========================================================================
# SCÉNARIOS DE RÉFÉRENCE
# =========================================================================


class TestScenarios:
    """Propriétaire A : 300/1000, 1000 € de charges, solde de début 50 €."""

    def test_proprietaire_crediteur(self, proprietaires_scenario):
        decompte = calculer_decompte_proprietaire(
            _mouvements_scenario(400.0), proprietaires_scenario, 2024, "A", solde_debut=50.0,
        )

        assert decompte.charges_communes == pytest.approx(300.0)
        assert decompte.frais == pytest.approx(0.0)
        assert decompte.depots == pytest.approx(400.0)
        assert decompte.solde_fin == pytest.approx(150.0)
        assert decompte.statut == "a_jour"

    def test_proprietaire_debiteur(self, proprietaires_scenario):
        decompte = calculer_decompte_proprietaire(
            _mouvements_scenario(100.0), proprietaires_scenario, 2024, "A", solde_debut=50.0,
        )

        assert decompte.solde_fin == pytest.approx(-150.0)
        assert decompte.statut == "attention"

    def test_champs_du_decompte(self, proprietaires_scenario):
        decompte = calculer_decompte_proprietaire(
            _mouvements_scenario(400.0), proprietaires_scenario, 2024, "A",
        )

        assert isinstance(decompte, DecompteAnnuel)
        assert decompte.annee == 2024
        assert decompte.total_milliemes == 1000
        assert decompte.pourcentage == pytest.approx(30.0)
        assert decompte.total_a_payer == pytest.approx(300.0)
        assert decompte.nb_depots == 1
        assert decompte.vers_dict()["pourcentage"] == pytest.approx(30.0)


# =========================================================================
# CALCUL SUR L'IMMEUBLE
# =========================================================================


class TestCalculerDecomptes:
    """Immeuble de trois propriétaires (fixtures partagées)."""

    def test_repartition(self, transactions_lf, proprietaires_lf):
        result = calculer_decomptes(transactions_lf, proprietaires_lf, 2024).collect()

        assert result["proprietaire_id"].to_list() == ["P1", "P2", "P3"]
        assert result["charges_communes"].to_list() == pytest.approx([300.0, 500.0, 200.0])
        assert result["frais"].to_list() == pytest.approx([6.0, 10.0, 4.0])
        # P1 explicite, P2 reconnu par le nom, 100 € non attribués
        assert result["depots"].to_list() == pytest.approx([400.0, 250.0, 0.0])
        assert result["solde_fin"].to_list() == pytest.approx([94.0, -260.0, -204.0])
        assert result["statut"].to_list() == ["a_jour", "attention", "attention"]

    def test_conforme_au_modele(self, transactions_lf, proprietaires_lf):
        result = calculer_decomptes(transactions_lf, proprietaires_lf, 2024).collect()

        DecompteAnnuelModele.validate(result)

    def test_soldes_debut_et_ajustements(self, transactions_lf, proprietaires_lf):
        result = calculer_decomptes(
            transactions_lf,
            proprietaires_lf,
            2024,
            soldes_debut={"P2": 300.0},
            ajustements=pl.DataFrame({"proprietaire_id": ["P3"], "ajustements": [-10.0]}),
        ).collect()

        assert result["solde_debut"].to_list() == pytest.approx([0.0, 300.0, 0.0])
        assert result["ajustements"].to_list() == pytest.approx([0.0, 0.0, -10.0])
        assert result["solde_fin"].to_list() == pytest.approx([94.0, 40.0, -214.0])

    def test_annee_sans_mouvement(self, transactions_lf, proprietaires_lf):
        result = calculer_decomptes(transactions_lf, proprietaires_lf, 2030).collect()

        assert result["charges_communes"].sum() == 0.0
        assert result["solde_fin"].to_list() == [0.0, 0.0, 0.0]
        assert result["statut"].to_list() == ["a_jour"] * 3

    def test_milliemes_tous_nuls(self, transactions_lf):
        proprietaires = pl.LazyFrame({
            "proprietaire_id": ["P1", "P2"],
            "nom": ["Dupont", "Martin"],
            "milliemes": [0, 0],
        })

        result = calculer_decomptes(transactions_lf, proprietaires, 2024).collect()

        assert result["quote_part"].to_list() == [0.0, 0.0]
        assert result["charges_communes"].to_list() == [0.0, 0.0]
        assert result["frais"].to_list() == [0.0, 0.0]

    def test_reference_proprietaire_inconnue(self, transactions_lf, proprietaires_lf):
        transactions = pl.concat([
            transactions_lf,
            transactions_lf.head(1).with_columns(
                pl.lit("T99").alias("transaction_id"),
                pl.lit("versement").alias("type"),
                pl.lit("P99").alias("proprietaire_id"),
            ),
        ])

        with pytest.raises(ProprietaireIntrouvable):
            calculer_decomptes(transactions, proprietaires_lf, 2024)

    def test_montants_illisibles_comptes_a_zero(self, proprietaires_lf, caplog):
        transactions = pl.LazyFrame({
            "transaction_id": ["T1", "T2"],
            "date_transaction": [date(2024, 1, 1), date(2024, 1, 2)],
            "montant": ["-1.000,00", "abc"],
            "type": ["charge", "charge"],
            "description": ["Toiture", "Peinture"],
        })

        with caplog.at_level(logging.WARNING):
            result = calculer_decomptes(transactions, proprietaires_lf, 2024).collect()

        assert result["charges_communes"].sum() == pytest.approx(1000.0)
        assert any("illisible" in r.message for r in caplog.records)


def test_calculer_decompte_proprietaire_inconnu(transactions_lf, proprietaires_lf):
    with pytest.raises(ProprietaireIntrouvable) as exc_info:
        calculer_decompte_proprietaire(transactions_lf, proprietaires_lf, 2024, "P42")

    assert exc_info.value.identifiants == ["P42"]


def test_calculer_decompte_proprietaire_compte_les_ambigus(proprietaires_lf):
    transactions = pl.LazyFrame({
        "transaction_id": ["T1"],
        "date_transaction": [date(2024, 5, 1)],
        "montant": [150.0],
        "type": ["versement"],
        "nom_contrepartie": ["DUPONT-MARTIN"],
    })

    with pytest.warns(UserWarning):
        decompte = calculer_decompte_proprietaire(transactions, proprietaires_lf, 2024, "P1")

    assert decompte.depots == 0.0
    assert decompte.depots_ambigus == 1


# =========================================================================
# TOTAUX DE L'IMMEUBLE
# =========================================================================


def test_calculer_totaux_immeuble(transactions_lf):
    totaux = calculer_totaux_immeuble(transactions_lf, 2024)

    assert totaux["total_charges_communes"] == pytest.approx(1000.0)
    assert totaux["total_frais"] == pytest.approx(20.0)
    assert totaux["total_depots"] == pytest.approx(750.0)
    assert totaux["nb_mouvements"] == 6
    assert totaux["nb_montants_invalides"] == 0


def test_resume_immeuble(transactions_lf, proprietaires_lf):
    decomptes = calculer_decomptes(transactions_lf, proprietaires_lf, 2024)
    totaux = calculer_totaux_immeuble(transactions_lf, 2024)

    resume = resume_immeuble(decomptes, totaux)

    assert resume["nb_proprietaires"] == 3
    assert resume["total_milliemes"] == 1000
    assert resume["total_charges_communes"] == pytest.approx(1000.0)
    assert resume["solde_global"] == pytest.approx(-370.0)
    assert resume["nb_crediteurs"] == 1
    assert resume["nb_debiteurs"] == 2
    assert resume["ecart_proration"] == pytest.approx(0.0, abs=1e-9)


class TestVerifierTotalMilliemes:

    def test_total_conforme(self, proprietaires_lf):
        assert verifier_total_milliemes(proprietaires_lf) == 0

    def test_ecart_signale(self, proprietaires_lf, caplog):
        with caplog.at_level(logging.WARNING):
            ecart = verifier_total_milliemes(proprietaires_lf, total_declare=1200)

        assert ecart == -200
        assert any("déclaré" in r.message for r in caplog.records)
