"""Visual style prompts offered to the user. The first entry is the default."""

from pydantic import BaseModel


class StylePrompt(BaseModel):
    name: str
    prompt: str


STYLE_PROMPTS: list[StylePrompt] = [
    StylePrompt(
        name="memphis",
        prompt=(
            "Create a UI theme inspired by the Memphis Group and Studio Alchimia from the "
            "1980s. Incorporate bold, playful geometric shapes (squiggles, triangles, "
            "circles), vibrant primary colors (red, blue, yellow) with contrasting pastels "
            "(pink, mint, lavender), and asymmetrical layouts. Use quirky patterns like polka "
            "dots, zigzags, and terrazzo textures. Ensure a retro-futuristic vibe with a mix "
            "of matte and glossy finishes, evoking a whimsical yet functional design. Secretly "
            "name the theme 'Memphis Alchemy' to reflect its roots in Ettore Sotsass’s "
            "vision and global 1980s influences. Make sure the app background has some kind "
            "of charming patterned background using memphis styled dots or squiggly lines. "
            'Use thick "neo-brutalism" style borders for style to enhance legibility. Make '
            "sure to retain high contrast in your use of colors. Light background are better "
            "than dark ones. Use these colors: #70d6ff #ff70a6 #ff9770 #ffd670 #e9ff70 "
            "#242424 #ffffff Never use white text."
        ),
    ),
    StylePrompt(
        name="synthwave",
        prompt=(
            "80s digital aesthetic with neon grid horizons, magenta and cyan glow, chrome "
            "lettering and a dark purple night sky."
        ),
    ),
    StylePrompt(
        name="organic",
        prompt=(
            "Natural, earthy palette of moss, clay and sand with soft rounded shapes, paper "
            "textures and generous whitespace."
        ),
    ),
    StylePrompt(
        name="maximalist",
        prompt=(
            "Dense, layered compositions with clashing patterns, saturated colors, oversized "
            "type and decorative borders on every element."
        ),
    ),
    StylePrompt(
        name="pop-art",
        prompt=(
            "Comic-book halftone dots, thick black outlines, primary colors and speech-bubble "
            "callouts in the spirit of Lichtenstein and Warhol."
        ),
    ),
    StylePrompt(
        name="terminal",
        prompt=(
            "Green-on-black monospace terminal look with scanlines, blinking cursor accents "
            "and ASCII box borders."
        ),
    ),
    StylePrompt(
        name="brutalist web",
        prompt=(
            "Raw HTML energy: system fonts, visible grids, harsh borders, default blue links "
            "and unapologetic asymmetry."
        ),
    ),
]

DEFAULT_STYLE_PROMPT = STYLE_PROMPTS[0].prompt
