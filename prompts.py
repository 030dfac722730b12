# prompts.py
import textwrap

RECOGNITION_FIELDS = (
    "is_artwork",
    "title",
    "author",
    "year",
    "movement",
    "technique",
    "dimensions",
    "location",
    "description",
    "image_url",
)

_FIELD_LIST = ", ".join(RECOGNITION_FIELDS)

RECOGNITION_SYSTEM_PROMPT = textwrap.dedent(
    f"""
    You are an expert art historian. I will give you an image (base64) and you must return
    ONLY a valid JSON with exactly these keys: {_FIELD_LIST}.
    "is_artwork" must be a boolean: true if the image clearly depicts an artwork (painting,
    sculpture, drawing, etc.) that can be identified or analyzed; false if the image does NOT
    depict an artwork (e.g. random photo, person, landscape, meme, screenshot, document, or
    anything that is not a work of art). When is_artwork is false, set all other fields to null.
    When is_artwork is true, all values must be in English. Each other key must be a simple text
    string (no Markdown, no HTML) or null if unknown. The "description" field must be
    approximately 2000 characters: a detailed analysis of the artwork including subject,
    composition, technique, historical context, and significance. Format the description with a
    blank line (double newline) between each paragraph. "image_url" must be a URL if available
    or null. Do not add any extra text, explanations, or delimiters; respond only with the raw JSON.
    """
).strip()

RECOGNITION_USER_PROMPT = "Return only the requested JSON, no additional text."


def build_character_prompt(title: str, author: str) -> str:
    """System instruction for the character analysis of a catalog artwork."""
    return textwrap.dedent(
        f"""
        Analyze the artwork "{title}" by {author} using the provided image and return valid JSON.

        Mandatory requirements:
        - The JSON must have a root key "obra" with general information about the painting using
          the keys "title", "author", "date", "location" and "objective" (the overall objective of the work).
        - The "obra" object MUST also include a boolean field "has_characters".
        - There must be a key "personajes" that is an array.
        - If the image does NOT contain identifiable characters/figures (e.g. abstract art, landscape,
          still life, architecture without people), set "obra.has_characters" to false and set "personajes" to [].
        - If you are not sure, prefer "obra.has_characters": false and "personajes": [] (do NOT guess).
        - Only include characters that are clearly present in the image. Do not infer characters from
          the title, author, or common art-history associations.
        - If "obra.has_characters" is true, each character must include at least: "nombre", "disciplina",
          "ubicacion" (approximate position within the artwork), "identificacion_visual" (how the character
          is recognized in the painting), "representa" (what idea, philosophical current or concept they
          symbolize in the work), "objetivo_del_autor" (the concrete intention of {author} in including
          that character).
        - The information must be based on the most accepted historiographical consensus, avoiding
          unnecessary speculation. If the character identity is not known, do not invent it; set
          "obra.has_characters" to false and return an empty array.
        - The result must be exclusively JSON, with no additional explanations, comments or text outside the block.
        - Do not include fictitious characters or repeat information between fields. Use clear and
          precise language in English for all fields.
        """
    ).strip()


def build_character_user_prompt(title: str, author: str) -> str:
    return f'Analyze the image of "{title}" by {author} and return only the JSON as specified.'
