"""Plain helpers shared by the test modules."""

from jose import jwt

import forms
import main


def default_sections():
    return [
        {
            "title": "Technique",
            "lines": [
                {"title": "Code quality", "max_score": 8, "type": "scale", "notation_type": "common"},
                {"title": "Participation", "max_score": 8, "type": "scale", "notation_type": "individual"},
                {"title": "Demo works", "max_score": 1, "type": "binary", "notation_type": "mixed"},
            ],
        }
    ]


def line_ids(form):
    """Line ids of a stored form keyed by notation type."""
    return {line["notation_type"]: line["id"] for _, line in forms.iter_lines(form)}


def auth(role="admin", sub="user-1"):
    token = jwt.encode({"sub": sub, "role": role}, main.SECRET_KEY, algorithm=main.ALGORITHM)
    return {"Authorization": f"Bearer {token}"}
