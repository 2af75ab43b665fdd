from pydantic import ValidationError
import uuid

def gen_id() -> str:
    return str(uuid.uuid4())

def hydrate(model, rows):
    """JSON -> objets ; les entrées invalides sont ignorées."""
    out = []
    for d in rows:
        try:
            out.append(model(**d))
        except ValidationError:
            continue
    return out
