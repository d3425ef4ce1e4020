"""
Import des relevés bancaires (format Belfius et format générique à en-têtes).

Le parsing transforme un extrait de compte en lignes contrôlées :
1. Détection du format (Belfius si une des 15 premières lignes annonce
   "Date de comptabilisation", sinon recherche d'une ligne d'en-tête)
2. Extraction des champs (date, montant, contrepartie, communication)
3. Validation vectorisée des lignes (date, montant non nul, doublon déjà importé)
4. Reconnaissance de la contrepartie (fournisseurs, frais bancaires, intérêts)
5. Préparation des transactions (type selon le signe, montant absolu,
   attribution des versements aux propriétaires)

Les lignes invalides ne bloquent pas les lignes valides ; elles restent dans
le rapport pour relecture.
"""

import io
import logging
import re
from dataclasses import dataclass
from datetime import date
from typing import Dict, Iterable, List, Optional, Union

import polars as pl

from coprocore.core.configuration import charger_configuration
from coprocore.core.models.transaction import Transaction
from coprocore.core.pipelines.classification import attribuer_depots, classifier_mouvements
from coprocore.inputs.montants import expr_montant_numerique

logger = logging.getLogger(__name__)

Lignes = List[List[str]]

MOTIFS_NOM_LIBELLE = [
    re.compile(r"\bVERS\s+[A-Z]{2}\d{2}(?:\s?\d{4}){1,7}\s+(.+?)\s+(?:REF|VAL|\+\+\+)", re.IGNORECASE),
    re.compile(r"\bDE\s+[A-Z]{2}\d{2}(?:\s?\d{4}){1,7}\s+(.+?)\s+(?:REF|VAL)", re.IGNORECASE),
]

MOTIF_DATE_LIGNE = re.compile(r"\d{1,2}[-/.]\d{1,2}[-/.]\d{2,4}|\d{4}-\d{1,2}-\d{1,2}")

SCHEMA_LIGNES = {
    "ligne": pl.Int64,
    "date_comptabilisation": pl.Date,
    "montant": pl.Float64,
    "nom_contrepartie": pl.Utf8,
    "communication": pl.Utf8,
    "compte_contrepartie": pl.Utf8,
    "reference": pl.Utf8,
    "fournisseur_id": pl.Utf8,
    "fournisseur_nom": pl.Utf8,
    "categorie": pl.Utf8,
    "erreurs": pl.List(pl.Utf8),
    "doublon": pl.Boolean,
    "valide": pl.Boolean,
}


# =============================================================================
# LECTURE
# =============================================================================

def detecter_separateur(texte: str) -> str:
    """Point-virgule si le relevé en contient un, sinon virgule."""
    return ";" if ";" in texte else ","


def lire_csv(texte: Union[str, bytes], encoding: str = "utf-8") -> Lignes:
    """
    Découpe un export CSV bancaire en lignes de cellules.

    Le séparateur est détecté une fois pour tout le fichier. Les lignes n'ont
    pas toutes la même longueur (en-têtes de relevé, pieds de page) : elles
    sont lues sur la largeur de la plus longue, puis débarrassées de leurs
    cellules vides finales. Les lignes blanches sont ignorées.

    Args:
        texte: Contenu CSV (texte ou octets)
        encoding: Encodage si `texte` est en octets

    Returns:
        Liste de lignes, chaque ligne étant une liste de cellules
    """
    if isinstance(texte, bytes):
        texte = texte.decode(encoding)
    brutes = [ligne for ligne in texte.lstrip("\ufeff").splitlines() if ligne.strip()]
    if not brutes:
        return []

    separateur = detecter_separateur("\n".join(brutes))
    largeur = max(ligne.count(separateur) for ligne in brutes) + 1

    df = pl.read_csv(
        io.StringIO("\n".join(brutes)),
        separator=separateur,
        has_header=False,
        schema={f"colonne_{i}": pl.Utf8 for i in range(largeur)},
        truncate_ragged_lines=True,
    )

    lignes = []
    for ligne in df.iter_rows():
        cellules = ["" if c is None else c for c in ligne]
        while cellules and cellules[-1] == "":
            cellules.pop()
        lignes.append(cellules)
    return lignes


def _cellule(ligne: List, index: int) -> str:
    if index < 0 or index >= len(ligne) or ligne[index] is None:
        return ""
    return str(ligne[index]).strip()


def expr_date_bancaire(colonne: str = "date_comptabilisation") -> pl.Expr:
    """
    Expression lisant une date bancaire texte.

    Formats : AAAA-MM-JJ, JJ-MM-AAAA, JJ/MM/AAAA, JJ.MM.AAAA ; une année sur
    deux chiffres est comprise comme 20AA. Une date illisible ou inexistante
    (31/02) devient null.

    Returns:
        Expression Polars Date
    """
    texte = pl.col(colonne).cast(pl.Utf8).str.strip_chars()
    iso = r"^(\d{4})-(\d{1,2})-(\d{1,2})"
    europeen = r"^(\d{1,2})[-/.](\d{1,2})[-/.](\d{2,4})$"

    annee = pl.coalesce(texte.str.extract(iso, 1), texte.str.extract(europeen, 3)).cast(pl.Int32)
    annee = pl.when(annee < 100).then(annee + 2000).otherwise(annee)
    mois = pl.coalesce(texte.str.extract(iso, 2), texte.str.extract(europeen, 2))
    jour = pl.coalesce(texte.str.extract(iso, 3), texte.str.extract(europeen, 1))

    return pl.concat_str([
        annee.cast(pl.Utf8).str.zfill(4),
        mois.str.zfill(2),
        jour.str.zfill(2),
    ], separator="-").str.strptime(pl.Date, "%Y-%m-%d", strict=False)


def parser_date(texte: Optional[str]) -> Optional[date]:
    """
    Lit une date bancaire isolée (voir expr_date_bancaire).

    Example:
        >>> parser_date("15/03/24")
        datetime.date(2024, 3, 15)
    """
    return (
        pl.DataFrame({"date": [texte]}, schema={"date": pl.Utf8})
        .select(expr_date_bancaire("date"))
        .item()
    )


def extraire_nom_libelle(libelle: Optional[str]) -> str:
    """
    Extrait le nom de la contrepartie d'un libellé de transaction Belfius.

    Example:
        >>> extraire_nom_libelle("VIREMENT VERS BE12 3456 DUPONT JEAN REF. 123")
        'DUPONT JEAN'
    """
    if not libelle:
        return ""
    for motif in MOTIFS_NOM_LIBELLE:
        correspondance = motif.search(libelle)
        if correspondance:
            return correspondance.group(1).strip()
    return ""


# =============================================================================
# FORMATS
# =============================================================================

def est_format_belfius(lignes: Lignes) -> bool:
    return any(
        "date de comptabilisation" in _cellule(ligne, 0).lower()
        for ligne in lignes[:15]
    )


def parser_belfius(lignes: Lignes) -> List[Dict[str, str]]:
    """
    Parse un export Belfius.

    Colonnes : Compte ; Date de comptabilisation ; Numéro d'extrait ;
    Numéro de transaction ; Compte contrepartie ; Nom contrepartie ; Rue ;
    Localité ; Transaction ; Date valeur ; Montant ; Devise ; BIC ; Pays ;
    Communications. Seules les lignes commençant par un IBAN belge sont retenues.
    """
    enregistrements = []
    for ligne in lignes:
        if len(ligne) < 11 or not _cellule(ligne, 0).startswith("BE"):
            continue

        libelle = _cellule(ligne, 8)
        nom = _cellule(ligne, 5) or extraire_nom_libelle(libelle) or libelle
        enregistrements.append({
            "compte": _cellule(ligne, 0),
            "date_comptabilisation": _cellule(ligne, 1),
            "nom_contrepartie": nom,
            "compte_contrepartie": _cellule(ligne, 4),
            "montant": _cellule(ligne, 10),
            "communication": _cellule(ligne, 14) or libelle,
            "reference": f"{_cellule(ligne, 2)}-{_cellule(ligne, 3)}",
        })
    return enregistrements


def detecter_entete(lignes: Lignes) -> int:
    """Index de la ligne d'en-tête (contient "date" et "montant" ou "amount"), 0 à défaut."""
    for index, ligne in enumerate(lignes):
        texte = " ".join(str(c) for c in ligne if c is not None).lower()
        if "date" in texte and ("montant" in texte or "amount" in texte):
            return index
    return 0


def _index_colonne(entetes: List[str], predicat) -> int:
    return next((i for i, h in enumerate(entetes) if predicat(h)), -1)


def colonnes_generiques(entete: List[str]) -> Dict[str, int]:
    """Positions des colonnes reconnues par mots-clés (-1 si absente)."""
    entetes = [str(h or "").strip().lower() for h in entete]
    return {
        "date": _index_colonne(
            entetes, lambda h: "date" in h and ("compta" in h or "opération" in h or h == "date")
        ),
        "montant": _index_colonne(entetes, lambda h: "montant" in h or "amount" in h),
        "nom": _index_colonne(
            entetes,
            lambda h: any(m in h for m in ("contrepartie", "nom", "beneficiaire", "bénéficiaire", "name")),
        ),
        "communication": _index_colonne(
            entetes,
            lambda h: any(m in h for m in ("communication", "description", "libellé", "motif")),
        ),
        "compte": _index_colonne(entetes, lambda h: "compte" in h and "contrepartie" in h),
    }


def parser_generique(lignes: Lignes) -> List[Dict[str, str]]:
    """
    Parse un export à en-têtes quelconque.

    Les lignes sans date reconnaissable (pied de page, totaux) sont ignorées.
    """
    if not lignes:
        return []

    index_entete = detecter_entete(lignes)
    colonnes = colonnes_generiques(lignes[index_entete])
    if colonnes["date"] < 0 or colonnes["montant"] < 0:
        logger.warning(f"Colonnes date/montant introuvables dans l'en-tête : {lignes[index_entete]}")
        return []

    enregistrements = []
    for ligne in lignes[index_entete + 1:]:
        if len(ligne) < 2:
            continue
        date_texte = _cellule(ligne, colonnes["date"])
        if not MOTIF_DATE_LIGNE.search(date_texte):
            continue
        enregistrements.append({
            "date_comptabilisation": date_texte,
            "nom_contrepartie": _cellule(ligne, colonnes["nom"]),
            "montant": _cellule(ligne, colonnes["montant"]),
            "communication": _cellule(ligne, colonnes["communication"]),
            "compte_contrepartie": _cellule(ligne, colonnes["compte"]),
            "reference": "",
        })
    return enregistrements


# =============================================================================
# RECONNAISSANCE ET VALIDATION
# =============================================================================

def _premier_cas(cas: List[tuple]) -> pl.Expr:
    """Valeur du premier cas dont la condition est vraie, null sinon."""
    resultat = None
    for condition, valeur in cas:
        valeur = pl.lit(valeur, dtype=pl.Utf8)
        resultat = pl.when(condition).then(valeur) if resultat is None else resultat.when(condition).then(valeur)
    return pl.lit(None, dtype=pl.Utf8) if resultat is None else resultat.otherwise(pl.lit(None, dtype=pl.Utf8))


def exprs_contrepartie(fournisseurs: Optional[Iterable[dict]] = None) -> List[pl.Expr]:
    """
    Expressions reconnaissant le fournisseur ou le type de frais d'une ligne bancaire.

    Le nom de la contrepartie et la communication sont cherchés, sans tenir
    compte de la casse, d'abord parmi les fournisseurs de l'immeuble (nom puis
    tags), ensuite parmi les motifs bancaires de la configuration. Le premier
    qui correspond l'emporte.

    Args:
        fournisseurs: Fournisseurs de l'immeuble (fournisseur_id, nom, tags, categorie)

    Returns:
        Expressions fournisseur_id, fournisseur_nom et categorie (null si non reconnu)
    """
    texte = pl.concat_str(
        [pl.col("nom_contrepartie").fill_null(""), pl.col("communication").fill_null("")],
        separator=" ",
    ).str.to_uppercase()
    renseigne = texte.str.strip_chars() != ""

    cas = []
    for fournisseur in fournisseurs or ():
        termes = [t.upper() for t in [fournisseur.get("nom")] + list(fournisseur.get("tags") or []) if t]
        if termes:
            cas.append((
                renseigne & texte.str.contains_any(termes),
                str(fournisseur.get("fournisseur_id") or fournisseur.get("id") or ""),
                fournisseur.get("nom"),
                fournisseur.get("categorie") or fournisseur.get("type"),
            ))
    for regle in charger_configuration()["motifs_banque"]:
        cas.append((
            renseigne & texte.str.contains_any([m.upper() for m in regle["motifs"]]),
            None,
            regle["contrepartie"],
            regle["categorie"],
        ))

    return [
        _premier_cas([(c[0], c[1]) for c in cas]).alias("fournisseur_id"),
        _premier_cas([(c[0], c[2]) for c in cas]).alias("fournisseur_nom"),
        _premier_cas([(c[0], c[3]) for c in cas]).alias("categorie"),
    ]


def reconnaitre_contrepartie(
    nom: Optional[str],
    communication: Optional[str],
    fournisseurs: Optional[Iterable[dict]] = None,
) -> Dict[str, Optional[str]]:
    """
    Reconnaît la contrepartie d'une ligne isolée (voir exprs_contrepartie).

    Example:
        >>> reconnaitre_contrepartie("FRAIS DE GESTION", None)["categorie"]
        'frais_bancaires'
    """
    ligne = pl.DataFrame(
        {"nom_contrepartie": [nom], "communication": [communication]},
        schema={"nom_contrepartie": pl.Utf8, "communication": pl.Utf8},
    )
    return ligne.select(exprs_contrepartie(fournisseurs)).row(0, named=True)


def expr_cle_montant(montant: pl.Expr) -> pl.Expr:
    """Montant absolu en centimes, clé de détection des doublons."""
    return (montant.abs() * 100).round(0).cast(pl.Int64, strict=False)


def _cles_existantes(transactions_existantes) -> Optional[pl.LazyFrame]:
    """Clés (montant absolu en centimes, date) des transactions déjà importées."""
    if transactions_existantes is None:
        return None

    existantes = transactions_existantes.lazy()
    colonnes = existantes.collect_schema().names()
    dates = [pl.col(c).cast(pl.Date) for c in ("date_comptabilisation", "date_transaction") if c in colonnes]
    if not dates:
        return None

    return existantes.select(
        expr_cle_montant(pl.col("montant").cast(pl.Float64)).alias("_cle_montant"),
        pl.coalesce(dates).alias("date_comptabilisation"),
    ).unique()


CHAMPS_ENREGISTREMENT = [
    "date_comptabilisation", "montant", "nom_contrepartie",
    "communication", "compte_contrepartie", "reference",
]


def valider_lignes(
    enregistrements: List[Dict[str, str]],
    transactions_existantes: Optional[Union[pl.LazyFrame, pl.DataFrame]] = None,
    fournisseurs: Optional[Iterable[dict]] = None,
) -> pl.DataFrame:
    """
    Valide les lignes extraites d'un relevé.

    Erreurs possibles : "Date manquante", "Date invalide", "Montant invalide"
    (illisible ou nul). Une ligne dont le couple (montant, date) est déjà
    importé est marquée `doublon`.

    Returns:
        DataFrame (SCHEMA_LIGNES), une ligne par enregistrement
    """
    brut = pl.LazyFrame(
        [
            {c: None if e.get(c) is None else str(e.get(c)) for c in CHAMPS_ENREGISTREMENT}
            for e in enregistrements
        ],
        schema={c: pl.Utf8 for c in CHAMPS_ENREGISTREMENT},
    )

    date_vide = pl.col("date_comptabilisation").fill_null("").str.strip_chars() == ""
    montant_invalide = (
        pl.col("montant").is_null()
        | pl.col("montant").is_nan()
        | pl.col("montant").is_infinite()
        | (pl.col("montant") == 0)
    )

    lignes = (
        brut
        .with_row_index("ligne", offset=1)
        .with_columns(
            pl.col("ligne").cast(pl.Int64),
            date_vide.alias("_date_vide"),
            expr_date_bancaire("date_comptabilisation").alias("date_comptabilisation"),
            expr_montant_numerique("montant").alias("montant"),
            *exprs_contrepartie(fournisseurs),
        )
        .with_columns(
            montant_invalide.alias("_montant_invalide"),
            expr_cle_montant(pl.col("montant")).alias("_cle_montant"),
        )
        .with_columns(
            pl.concat_list([
                pl.when(pl.col("_date_vide")).then(pl.lit("Date manquante"))
                .when(pl.col("date_comptabilisation").is_null()).then(pl.lit("Date invalide")),
                pl.when(pl.col("_montant_invalide")).then(pl.lit("Montant invalide")),
            ]).list.drop_nulls().alias("erreurs"),
            pl.col("montant").fill_nan(None),
        )
    )

    existantes = _cles_existantes(transactions_existantes)
    if existantes is None:
        lignes = lignes.with_columns(pl.lit(False).alias("doublon"))
    else:
        lignes = (
            lignes
            .join(
                existantes.with_columns(pl.lit(True).alias("doublon")),
                on=["_cle_montant", "date_comptabilisation"],
                how="left",
            )
            .with_columns((pl.col("doublon").fill_null(False) & ~pl.col("_montant_invalide")).alias("doublon"))
        )

    resultat = (
        lignes
        .with_columns(
            [pl.col(c).fill_null("") for c in ("nom_contrepartie", "communication", "compte_contrepartie", "reference")]
        )
        .with_columns(((pl.col("erreurs").list.len() == 0) & ~pl.col("doublon")).alias("valide"))
        .sort("ligne")
        .select([pl.col(c).cast(t) for c, t in SCHEMA_LIGNES.items()])
        .collect()
    )

    nb_invalides = resultat.filter(pl.col("erreurs").list.len() > 0).height
    if nb_invalides:
        logger.warning(f"{nb_invalides} ligne(s) invalide(s) sur {resultat.height}")
    return resultat


# =============================================================================
# PRÉPARATION DES TRANSACTIONS
# =============================================================================

def preparer_transactions(
    lignes: pl.DataFrame,
    proprietaires: Optional[pl.LazyFrame] = None,
) -> pl.DataFrame:
    """
    Convertit les lignes valides en transactions prêtes à enregistrer.

    - type "charge" si le montant est négatif, sinon "versement"
    - montant stocké en valeur absolue
    - description "nom - communication" tronquée à la longueur maximale
    - versements attribués aux propriétaires avec les règles du moteur de décompte

    Returns:
        DataFrame conforme au modèle Transaction, plus `mode_attribution`
    """
    longueur_max = charger_configuration()["longueur_max_description"]

    transactions = (
        lignes.lazy()
        .filter(pl.col("valide"))
        .with_columns(
            pl.when(pl.col("reference").str.strip_chars("- ") != "")
            .then(pl.col("reference"))
            .otherwise(
                pl.concat_str([
                    pl.lit("import-"),
                    pl.col("date_comptabilisation").dt.strftime("%Y%m%d"),
                    pl.lit("-"),
                    pl.col("ligne").cast(pl.Utf8),
                ])
            )
            .alias("transaction_id"),
            pl.col("date_comptabilisation").alias("date_transaction"),
            pl.lit(None, dtype=pl.Datetime("us")).alias("created_at"),
            pl.when(pl.col("montant") < 0)
            .then(pl.lit("charge"))
            .otherwise(pl.lit("versement"))
            .alias("type"),
            pl.col("montant").abs().alias("montant"),
            pl.concat_str(
                [
                    pl.when(pl.col("nom_contrepartie") != "").then(pl.col("nom_contrepartie")),
                    pl.when(pl.col("communication") != "").then(pl.col("communication")),
                ],
                separator=" - ",
                ignore_nulls=True,
            )
            .str.slice(0, longueur_max)
            .alias("description"),
            pl.lit(None, dtype=pl.Utf8).alias("proprietaire_id"),
        )
    )

    colonnes = list(Transaction.to_schema().columns)
    if proprietaires is None:
        return Transaction.validate(transactions.select(colonnes).collect())

    attribuees = attribuer_depots(classifier_mouvements(transactions), proprietaires)
    resultat = (
        attribuees
        .with_columns(pl.col("proprietaire_attribue").alias("proprietaire_id"))
        .select(colonnes + ["mode_attribution"])
        .collect()
    )
    return Transaction.validate(resultat)


@dataclass(frozen=True)
class RapportImport:
    """Résultat de l'analyse d'un relevé, avant enregistrement."""

    format: str
    lignes: pl.DataFrame
    transactions: pl.DataFrame

    @property
    def nb_lignes(self) -> int:
        return self.lignes.height

    @property
    def nb_valides(self) -> int:
        return self.lignes.filter(pl.col("valide")).height

    @property
    def nb_invalides(self) -> int:
        return self.lignes.filter(pl.col("erreurs").list.len() > 0).height

    @property
    def nb_doublons(self) -> int:
        return self.lignes.filter(pl.col("doublon")).height

    @property
    def nb_reconnues(self) -> int:
        return self.lignes.filter(pl.col("categorie").is_not_null()).height


def analyser_releve(
    source: Union[str, bytes, Lignes],
    transactions_existantes: Optional[Union[pl.LazyFrame, pl.DataFrame]] = None,
    fournisseurs: Optional[Iterable[dict]] = None,
    proprietaires: Optional[pl.LazyFrame] = None,
) -> RapportImport:
    """
    Analyse un relevé bancaire complet.

    Args:
        source: Contenu CSV ou lignes déjà découpées (export tableur)
        transactions_existantes: Transactions déjà importées (détection des doublons)
        fournisseurs: Fournisseurs connus de l'immeuble
        proprietaires: Propriétaires, pour attribuer les versements

    Returns:
        RapportImport avec les lignes contrôlées et les transactions valides
    """
    lignes = lire_csv(source) if isinstance(source, (str, bytes)) else source

    if est_format_belfius(lignes):
        format_releve, enregistrements = "belfius", parser_belfius(lignes)
    else:
        format_releve, enregistrements = "generique", parser_generique(lignes)

    controle = valider_lignes(enregistrements, transactions_existantes, fournisseurs)
    transactions = preparer_transactions(controle, proprietaires)

    rapport = RapportImport(format=format_releve, lignes=controle, transactions=transactions)
    logger.info(
        f"Relevé {format_releve} analysé : {rapport.nb_valides}/{rapport.nb_lignes} ligne(s) valide(s), "
        f"{rapport.nb_doublons} doublon(s), {rapport.nb_reconnues} reconnue(s)"
    )
    return rapport
