"""
Formatage des montants, dates et pourcentages pour l'affichage (fr_BE).

C'est le seul endroit où les montants sont arrondis au centime.
"""

from datetime import date
from typing import Optional

from babel.dates import format_date
from babel.numbers import format_currency, format_decimal

LOCALE = "fr_BE"


def formater_montant(montant: Optional[float], devise: str = "EUR") -> str:
    """
    Example:
        >>> formater_montant(1234.5)
        '1 234,50 €'
    """
    return format_currency(round(montant or 0.0, 2), devise, locale=LOCALE)


def formater_date(valeur: Optional[date], format: str = "long") -> str:
    if valeur is None:
        return ""
    return format_date(valeur, format=format, locale=LOCALE)


def formater_pourcentage(quote_part: float) -> str:
    """Quote-part (0 à 1) affichée en pourcentage à deux décimales."""
    return f"{format_decimal(round(quote_part * 100, 2), format='0.00', locale=LOCALE)} %"


LIBELLES_STATUT = {
    "a_jour": "À jour",
    "attention": "Régularisation nécessaire",
}


def formater_decompte(decompte) -> dict:
    """Version affichable d'un DecompteAnnuel."""
    return {
        "proprietaire": " ".join(p for p in (decompte.prenom, decompte.nom) if p),
        "millièmes": f"{decompte.milliemes}/{decompte.total_milliemes}",
        "quote_part": formater_pourcentage(decompte.quote_part),
        "solde_debut": formater_montant(decompte.solde_debut),
        "charges_communes": formater_montant(decompte.charges_communes),
        "frais": formater_montant(decompte.frais),
        "depots": formater_montant(decompte.depots),
        "ajustements": formater_montant(decompte.ajustements),
        "solde_fin": formater_montant(decompte.solde_fin),
        "statut": LIBELLES_STATUT[decompte.statut],
    }
