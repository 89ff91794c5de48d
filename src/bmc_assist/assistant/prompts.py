"""System prompt construction for the canvas assistant.

All text is French: the assistant serves French-speaking entrepreneurs
filling in a Business Model Canvas (Osterwalder method).
"""

from typing import Mapping, Optional

MODE_SUGGEST = "suggest"
MODE_IMPROVE = "improve"

CONTEXT_SNIPPET_MAX_CHARS = 300

# Descriptions of the nine canvas blocks, keyed by block id
BLOCK_INFO = {
    "segments": "Segments de clientèle — les groupes de personnes ou organisations que l'entreprise sert",
    "proposition": "Proposition de valeur — la combinaison de produits/services qui crée de la valeur",
    "canaux": "Canaux — comment l'entreprise communique et livre sa proposition de valeur",
    "relations": "Relations clients — les types de relations établies avec chaque segment",
    "revenus": "Flux de revenus — l'argent généré auprès de chaque segment",
    "ressources": "Ressources clés — les actifs nécessaires au fonctionnement du modèle",
    "activites": "Activités clés — les actions les plus importantes pour faire fonctionner le modèle",
    "partenaires": "Partenaires clés — le réseau de fournisseurs et partenaires",
    "couts": "Structure de coûts — tous les coûts engendrés par le modèle",
}

NO_CONTEXT_SENTENCE = "L'utilisateur n'a pas encore rempli d'autres blocs."
CONTEXT_HEADER = "Voici ce que l'utilisateur a déjà rempli dans les autres blocs :"

SUGGEST_INSTRUCTION = """L'utilisateur demande une SUGGESTION DE CONTENU pour le bloc "{title}".
Génère un texte concret et spécifique qu'il pourrait utiliser directement.
Le texte doit être pratique, avec des exemples réalistes.
Ne mets PAS de titre ni de structure markdown. Écris comme si tu remplissais le champ directement.
Limite-toi à 150-250 mots."""

IMPROVE_INSTRUCTION = """L'utilisateur demande d'AMÉLIORER son texte existant pour le bloc "{title}".
Reformule et enrichis le texte pour le rendre plus clair, spécifique et complet.
Garde le sens original mais améliore la structure et ajoute des détails pertinents.
Ne mets PAS de titre ni de structure markdown. Écris comme si tu remplissais le champ directement.
Limite-toi à 150-250 mots."""

QUESTION_INSTRUCTION = """L'utilisateur pose une question libre. Réponds de manière concise (2-4 phrases) et utile.
Si pertinent, donne des exemples concrets."""

RULES = """Règles :
- Réponds toujours en français.
- Sois professionnel mais accessible.
- Utilise des exemples concrets et réalistes.
- Ne fabrique pas d'information. Si tu n'es pas sûr, dis-le.
- Ne mentionne jamais que tu es un modèle IA ou Claude."""


def describe_block(block_id: str) -> str:
    """Human-readable description of a canvas block, or the raw id."""
    return BLOCK_INFO.get(block_id, block_id)


def build_context_section(current_block_id: str, all_blocks_data: Mapping[str, object]) -> str:
    """List every other populated block, each snippet capped at 300 chars."""
    lines = []
    for block_id, value in all_blocks_data.items():
        if block_id == current_block_id or not isinstance(value, str):
            continue
        text = value.strip()
        if not text:
            continue
        lines.append(f"- {describe_block(block_id)} : {text[:CONTEXT_SNIPPET_MAX_CHARS]}")

    if not lines:
        return NO_CONTEXT_SENTENCE
    return CONTEXT_HEADER + "\n" + "\n".join(lines)


def build_current_section(title: str, current_text: Optional[str]) -> str:
    text = current_text.strip() if current_text else ""
    if text:
        return f'Contenu actuel du bloc "{title}" :\n{text}'
    return f'Le bloc "{title}" est vide pour l\'instant.'


def build_mode_instruction(mode: Optional[str], title: str) -> str:
    if mode == MODE_SUGGEST:
        return SUGGEST_INSTRUCTION.format(title=title)
    if mode == MODE_IMPROVE:
        return IMPROVE_INSTRUCTION.format(title=title)
    return QUESTION_INSTRUCTION


def build_system_prompt(
    current_block_id: str,
    current_block_title: Optional[str],
    current_text: Optional[str],
    all_blocks_data: Optional[Mapping[str, object]],
    mode: Optional[str],
) -> str:
    """Assemble the system prompt for one assistant request.

    Args:
        current_block_id: Id of the block being edited (e.g. ``"segments"``).
        current_block_title: Title shown to the user; falls back to the id.
        current_text: Current content of the block, included untruncated.
        all_blocks_data: Content of every block, keyed by block id.
        mode: ``"suggest"``, ``"improve"``, or anything else for free questions.

    Returns:
        The full system prompt. Pure: same inputs, same output.
    """
    title = current_block_title or current_block_id
    context = build_context_section(current_block_id, all_blocks_data or {})
    current = build_current_section(title, current_text)
    instruction = build_mode_instruction(mode, title)

    return (
        "Tu es un expert en stratégie d'affaires et en Business Model Canvas (méthode Osterwalder).\n"
        "Tu aides un entrepreneur francophone à construire son Business Model Canvas étape par étape.\n"
        "\n"
        f'Le bloc actuel est : "{title}" ({describe_block(current_block_id)}).\n'
        f"\n\n{context}\n"
        f"\n\n{current}\n"
        f"\n\n{instruction}\n"
        "\n"
        f"{RULES}"
    )
