"""Tests unitaires pour le formatage d'affichage (locale fr_BE)."""

import re
from datetime import date

import pytest

from coprocore.core.pipelines.decompte import DecompteAnnuel
from coprocore.core.utils.formatage import (
    formater_date,
    formater_decompte,
    formater_montant,
    formater_pourcentage,
)


def _compact(texte: str) -> str:
    """Retire les espaces (y compris insécables) insérées par Babel."""
    return re.sub(r"\s", "", texte)


@pytest.mark.parametrize("montant,attendu", [
    (1234.5, "1234,50€"),
    (12.345678, "12,35€"),
    (None, "0,00€"),
    (150, "150,00€"),
])
def test_formater_montant(montant, attendu):
    assert _compact(formater_montant(montant)) == attendu


def test_formater_montant_negatif():
    texte = _compact(formater_montant(-260.0))

    assert "260,00" in texte
    assert "-" in texte


def test_formater_pourcentage():
    assert _compact(formater_pourcentage(0.3)) == "30,00%"
    assert _compact(formater_pourcentage(1 / 3)) == "33,33%"


def test_formater_date():
    assert formater_date(date(2024, 3, 15)) == "15 mars 2024"
    assert formater_date(None) == ""


def test_formater_decompte():
    decompte = DecompteAnnuel(
        proprietaire_id="P1", nom="Dupont", prenom="Jean", annee=2024,
        milliemes=300, total_milliemes=1000, quote_part=0.3,
        charges_communes=300.0, frais=0.0, depots=400.0,
        solde_debut=50.0, ajustements=0.0, solde_fin=150.0, statut="a_jour",
    )

    affichage = formater_decompte(decompte)

    assert affichage["proprietaire"] == "Jean Dupont"
    assert affichage["millièmes"] == "300/1000"
    assert _compact(affichage["solde_fin"]) == "150,00€"
    assert affichage["statut"] == "À jour"
