"""Tests unitaires pour les relevés, la tarification et la répartition de l'eau."""

import logging

import pandera.errors
import polars as pl
import pytest

from coprocore.core.erreurs import ErreurChargement, ErreurValidation
from coprocore.core.models import RelevéCompteur
from coprocore.core.pipelines.eau import (
    calculer_couts_eau,
    calculer_m3_gratuits,
    charger_tarifs_eau,
    consommations_releves,
    normaliser_region,
    repartir_eau,
    repartir_pertes,
    tarif_eau,
    valider_releve,
    valider_releves,
)


# =========================================================================
# RELEVÉS
# =========================================================================


class TestValiderReleve:

    def test_consommation_exacte(self):
        assert valider_releve(120.500, 135.250) == 14.75

    def test_index_decroissant_refuse(self):
        with pytest.raises(ErreurValidation) as exc_info:
            valider_releve(50, 40)

        assert exc_info.value.champ == "index_actuel"

    @pytest.mark.parametrize("precedent,actuel", [(None, 10.0), (10.0, None), (-1.0, 5.0)])
    def test_index_invalides(self, precedent, actuel):
        with pytest.raises(ErreurValidation):
            valider_releve(precedent, actuel)

    def test_consommation_nulle_acceptee(self):
        assert valider_releve(42.0, 42.0) == 0.0

    def test_consommation_anormale_signalee(self, caplog):
        with caplog.at_level(logging.WARNING, logger="coprocore.core.pipelines.eau"):
            consommation = valider_releve(0.0, 1500.0)

        assert consommation == 1500.0
        assert any("anormalement" in r.message for r in caplog.records)


def test_valider_releves():
    releves = pl.LazyFrame({
        "compteur_id": ["C1", "C2", "C3", "C4"],
        "index_precedent": [120.5, 50.0, None, 0.0],
        "index_actuel": [135.25, 40.0, 10.0, 2000.0],
    })

    result = valider_releves(releves).collect()

    assert result["valide"].to_list() == [True, False, False, True]
    assert result["consommation"].to_list() == [14.75, 0.0, 0.0, 2000.0]
    assert result["anomalie"].to_list() == [False, False, False, True]
    assert result["erreur"][1] == "Index actuel inférieur à l'index précédent"
    assert result["erreur"][2] == "Index manquant"


def test_modele_releve_refuse_index_decroissant():
    releves = pl.DataFrame({
        "compteur_id": ["C1"],
        "type_compteur": ["individuel"],
        "index_precedent": [50.0],
        "index_actuel": [40.0],
    })

    with pytest.raises(pandera.errors.SchemaError):
        RelevéCompteur.validate(releves)


class TestConsommationsReleves:

    def test_releves_invalides_ecartes(self):
        releves = pl.LazyFrame({
            "compteur_id": ["CP", "C1", "C2", "C3"],
            "type_compteur": ["principal", "divisionnaire", "divisionnaire", "divisionnaire"],
            "proprietaire_id": [None, "P1", "P2", "P3"],
            "index_precedent": [1000.0, 10.0, 20.0, 50.0],
            "index_actuel": [1100.0, 40.0, 60.0, 45.0],
        })

        result = consommations_releves(releves)

        assert result.columns == ["compteur_id", "proprietaire_id", "type_compteur", "consommation"]
        assert result["compteur_id"].to_list() == ["CP", "C1", "C2"]
        assert result["consommation"].to_list() == pytest.approx([100.0, 30.0, 40.0])

    def test_alimente_la_repartition(self, proprietaires_lf):
        releves = pl.LazyFrame({
            "compteur_id": ["CP", "C1", "C2"],
            "type_compteur": ["principal", "divisionnaire", "divisionnaire"],
            "proprietaire_id": [None, "P1", "P2"],
            "index_precedent": [1000.0, 10.0, 20.0],
            "index_actuel": [1100.0, 40.0, 60.0],
        })
        consommations = consommations_releves(releves)
        principal = consommations.filter(pl.col("type_compteur") == "principal")["consommation"].sum()

        result = repartir_eau(
            consommations.filter(pl.col("type_compteur") != "principal").lazy(),
            proprietaires_lf,
            "divisionnaire",
            1000.0,
            consommation_principale=principal,
        ).collect()

        assert result["consommation_attribuee"].to_list() == pytest.approx([39.0, 55.0, 6.0])
        assert result["montant"].sum() == pytest.approx(1000.0)

    def test_sans_proprietaire_ni_type(self):
        releves = pl.LazyFrame({"compteur_id": ["C1"], "index_precedent": [5.0], "index_actuel": [7.5]})

        result = consommations_releves(releves)

        assert result.row(0) == ("C1", None, None, 2.5)

    def test_type_de_compteur_inconnu(self):
        releves = pl.LazyFrame({
            "compteur_id": ["G1"],
            "type_compteur": ["gaz"],
            "index_precedent": [5.0],
            "index_actuel": [7.0],
        })

        with pytest.raises(pandera.errors.SchemaError):
            consommations_releves(releves)


# =========================================================================
# TARIFS
# =========================================================================


@pytest.mark.parametrize("libelle,attendu", [
    ("Wallonie", "wallonie"),
    ("Région wallonne", "wallonie"),
    ("Vlaams Gewest", "flandre"),
    ("Flandre", "flandre"),
    ("Bruxelles-Capitale", "bruxelles"),
    (None, "bruxelles"),
])
def test_normaliser_region(libelle, attendu):
    assert normaliser_region(libelle) == attendu


def test_charger_tarifs_eau():
    tarifs = charger_tarifs_eau().collect()

    assert set(tarifs["region"].to_list()) == {"wallonie", "bruxelles", "flandre"}
    assert tarifs.schema["cve_distribution"] == pl.Float64
    assert tarifs.schema["m3_gratuits_par_habitant"] == pl.Int64


class TestTarifEau:

    def test_tarif_wallon(self):
        tarif = tarif_eau("wallonie", 2025)

        assert tarif["distributeur"] == "SWDE"
        assert tarif["cve_distribution"] == pytest.approx(5.315)

    def test_annee_future_reprend_le_dernier_tarif(self):
        assert tarif_eau("bruxelles", 2030)["annee"] == 2025

    def test_aucun_tarif(self):
        with pytest.raises(ErreurChargement):
            tarif_eau("wallonie", 1990)


@pytest.mark.parametrize("habitants,attendu", [(0, 0), (1, 15), (5, 75), (7, 75)])
def test_calculer_m3_gratuits(habitants, attendu):
    assert calculer_m3_gratuits(habitants) == attendu


class TestCalculerCoutsEau:

    def test_wallonie(self):
        consommations = pl.LazyFrame({"consommation": [100.4, 10.6], "habitants": [2, 1]})

        result = calculer_couts_eau(consommations, "wallonie").collect()

        assert result["m3_consommes"].to_list() == [100, 11]
        assert result["m3_gratuits"].to_list() == [30, 15]
        assert result["m3_factures"].to_list() == [70, 0]
        assert result["montant_eau"].to_list() == pytest.approx([372.05, 0.0], abs=0.01)
        assert result["montant_assainissement"].to_list() == pytest.approx([350.0, 38.5])
        # redevance partagée entre les deux logements
        assert result["montant_redevance"].to_list() == pytest.approx([15.0, 15.0])
        assert result["montant_total"].to_list() == pytest.approx([781.27, 56.71], abs=0.01)

    def test_bruxelles(self):
        consommations = pl.LazyFrame({"consommation": [50.0]})

        result = calculer_couts_eau(consommations, "Bruxelles").collect()

        assert result["habitants"].to_list() == [1]
        assert result["montant_eau"][0] == pytest.approx(224.5)
        assert result["montant_tva"][0] == pytest.approx(13.47)
        assert result["montant_total"][0] == pytest.approx(237.97)

    def test_flandre(self):
        consommations = pl.LazyFrame({"consommation": [100.0], "habitants": [2]})

        result = calculer_couts_eau(consommations, "flandre").collect()

        assert result["m3_tarif_base"][0] == 60
        assert result["m3_tarif_confort"][0] == 40
        assert result["montant_eau"][0] == pytest.approx(976.8)
        assert result["montant_total"][0] == pytest.approx(1035.41)

    def test_arrondi_demi_m3(self):
        consommations = pl.LazyFrame({"consommation": [14.5, 14.49]})

        result = calculer_couts_eau(consommations, "bruxelles").collect()

        assert result["m3_consommes"].to_list() == [15, 14]


# =========================================================================
# RÉPARTITION
# =========================================================================


def test_repartir_pertes():
    consommations = pl.LazyFrame({"consommation": [10.0, 30.0]})

    result = repartir_pertes(consommations, 8.0).collect()

    assert result["part_pertes"].to_list() == pytest.approx([2.0, 6.0])
    assert result["consommation_avec_pertes"].to_list() == pytest.approx([12.0, 36.0])


def test_repartir_pertes_consommation_nulle():
    consommations = pl.LazyFrame({"consommation": [0.0, 0.0]})

    result = repartir_pertes(consommations, 8.0).collect()

    assert result["part_pertes"].to_list() == pytest.approx([4.0, 4.0])


class TestRepartirEau:

    def test_collectif(self, proprietaires_lf):
        consommations = pl.LazyFrame(schema={"proprietaire_id": pl.Utf8, "consommation": pl.Float64})

        result = repartir_eau(consommations, proprietaires_lf, "collectif", 1000.0).collect()

        assert result["montant"].to_list() == pytest.approx([300.0, 500.0, 200.0])

    def test_divisionnaire(self, proprietaires_lf):
        consommations = pl.LazyFrame({"proprietaire_id": ["P1", "P2"], "consommation": [10.0, 20.0]})

        result = repartir_eau(
            consommations, proprietaires_lf, "divisionnaire", 400.0, consommation_principale=40.0
        ).collect()

        assert result["eau_commune"].to_list() == pytest.approx([3.0, 5.0, 2.0])
        assert result["consommation_attribuee"].to_list() == pytest.approx([13.0, 25.0, 2.0])
        assert result["montant"].to_list() == pytest.approx([130.0, 250.0, 20.0])
        assert result["montant"].sum() == pytest.approx(400.0)

    def test_individuel(self, proprietaires_lf):
        consommations = pl.LazyFrame({"proprietaire_id": ["P1", "P2", "P1"], "consommation": [5.0, 30.0, 5.0]})

        result = repartir_eau(consommations, proprietaires_lf, "individuel", 100.0).collect()

        assert result["consommation_privative"].to_list() == pytest.approx([10.0, 30.0, 0.0])
        assert result["montant"].to_list() == pytest.approx([25.0, 75.0, 0.0])

    def test_individuel_sans_consommation(self, proprietaires_lf):
        consommations = pl.LazyFrame({"proprietaire_id": ["P1"], "consommation": [0.0]})

        result = repartir_eau(consommations, proprietaires_lf, "individuel", 100.0).collect()

        assert result["montant"].to_list() == pytest.approx([30.0, 50.0, 20.0])

    def test_mode_inconnu(self, proprietaires_lf):
        with pytest.raises(ErreurValidation):
            repartir_eau(pl.LazyFrame(), proprietaires_lf, "forfait", 100.0)

    def test_divisionnaire_sans_compteur_principal(self, proprietaires_lf):
        with pytest.raises(ErreurValidation):
            repartir_eau(pl.LazyFrame(), proprietaires_lf, "divisionnaire", 100.0)
