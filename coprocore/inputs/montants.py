"""
Lecture des montants à la frontière d'ingestion.

Un montant illisible n'est jamais converti silencieusement en zéro :
- `parser_montant` retourne un ResultatMontant portant l'erreur
- `normaliser_montants` marque la ligne (`montant_invalide`) et journalise un avertissement
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Optional

import polars as pl

logger = logging.getLogger(__name__)

# Séparateur de milliers suivi d'une virgule décimale : 1.234,56
_MOTIF_MILLIERS_EUROPEENS = r"^-?\d{1,3}(\.\d{3})+,\d+$"


@dataclass(frozen=True)
class ResultatMontant:
    """Résultat de lecture d'un montant : valeur ou erreur, jamais les deux."""

    valeur: Optional[float] = None
    erreur: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.erreur is None


def _normaliser_texte(texte: str) -> str:
    texte = "".join(texte.split()).replace("€", "")
    if "," in texte and "." in texte:
        # 1.234,56 -> 1234.56 ; 1,234.56 -> 1234.56
        if texte.rfind(",") > texte.rfind("."):
            texte = texte.replace(".", "").replace(",", ".")
        else:
            texte = texte.replace(",", "")
    return texte.replace(",", ".")


def parser_montant(valeur: Any) -> ResultatMontant:
    """
    Lit un montant saisi ou importé.

    Args:
        valeur: Nombre ou texte ("1 234,56", "-12.50", "15,00 €")

    Returns:
        ResultatMontant avec la valeur float ou un message d'erreur

    Example:
        >>> parser_montant("1.234,56").valeur
        1234.56
        >>> parser_montant("abc").ok
        False
    """
    if valeur is None:
        return ResultatMontant(erreur="Montant manquant")

    if isinstance(valeur, bool):
        return ResultatMontant(erreur=f"Montant non numérique: '{valeur}'")

    if isinstance(valeur, (int, float)):
        if math.isnan(valeur) or math.isinf(valeur):
            return ResultatMontant(erreur=f"Montant non numérique: '{valeur}'")
        return ResultatMontant(valeur=float(valeur))

    texte = _normaliser_texte(str(valeur))
    if not texte:
        return ResultatMontant(erreur="Montant manquant")

    try:
        nombre = float(texte)
    except ValueError:
        return ResultatMontant(erreur=f"Montant non numérique: '{valeur}'")

    if math.isnan(nombre) or math.isinf(nombre):
        return ResultatMontant(erreur=f"Montant non numérique: '{valeur}'")
    return ResultatMontant(valeur=nombre)


def expr_montant_numerique(colonne: str = "montant") -> pl.Expr:
    """
    Expression convertissant une colonne texte de montants en Float64.

    Mêmes règles que `parser_montant` ; une valeur illisible devient null.

    Args:
        colonne: Nom de la colonne texte

    Returns:
        Expression Polars Float64

    Example:
        >>> df.with_columns(expr_montant_numerique("montant").alias("montant"))
    """
    texte = (
        pl.col(colonne)
        .cast(pl.Utf8)
        .str.replace_all(r"[\s €]", "")
    )
    europeen = texte.str.contains(_MOTIF_MILLIERS_EUROPEENS)
    anglo = texte.str.contains(r"^-?\d{1,3}(,\d{3})+\.\d+$")

    return (
        pl.when(europeen)
        .then(texte.str.replace_all(r"\.", "").str.replace(",", ".", literal=True))
        .when(anglo)
        .then(texte.str.replace_all(",", "", literal=True))
        .otherwise(texte.str.replace(",", ".", literal=True))
        .cast(pl.Float64, strict=False)
    )


def normaliser_montants(transactions: pl.LazyFrame) -> pl.LazyFrame:
    """
    Convertit la colonne `montant` en Float64 et marque les montants illisibles.

    Les montants invalides (texte non numérique, null, NaN) sont remplacés par 0.0
    avec `montant_invalide = True` et un avertissement est journalisé.

    Args:
        transactions: LazyFrame avec une colonne `montant` texte ou numérique

    Returns:
        LazyFrame avec `montant` (Float64) et `montant_invalide` (Boolean)
    """
    schema = transactions.collect_schema()
    if schema["montant"] == pl.Utf8:
        montant = expr_montant_numerique("montant")
    else:
        montant = pl.col("montant").cast(pl.Float64, strict=False)

    resultat = (
        transactions
        .with_columns(montant.alias("montant"))
        .with_columns(
            (pl.col("montant").is_null() | pl.col("montant").is_nan()).alias("montant_invalide")
        )
        .with_columns(
            pl.when(pl.col("montant_invalide"))
            .then(pl.lit(0.0))
            .otherwise(pl.col("montant"))
            .alias("montant")
        )
    )

    nb_invalides = resultat.select(pl.col("montant_invalide").sum()).collect().item()
    if nb_invalides:
        logger.warning(f"{nb_invalides} montant(s) illisible(s) exclus des totaux (comptés à 0)")

    return resultat
