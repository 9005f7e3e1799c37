import re
from typing import Dict, Any, List, Optional
from pathlib import Path
from .errors import TemplateError, handle_template_error


_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")


class TemplateLoader:

    def __init__(self, template_root: Optional[str] = None):
        if template_root is None:
            self.template_root = Path(__file__).parent / "templates"
        else:
            self.template_root = Path(template_root)
        self._cache: Dict[str, str] = {}

    def load_template(self, template_path: str) -> str:
        if template_path in self._cache:
            return self._cache[template_path]
        full_path = self.template_root / template_path
        try:
            with open(full_path, 'r', encoding='utf-8') as f:
                content = f.read()
        except FileNotFoundError:
            raise TemplateError(f"Template not found: {template_path}", template_path)
        except OSError as e:
            raise handle_template_error(e, template_path)
        self._cache[template_path] = content
        return content

    def placeholders(self, template_path: str) -> List[str]:
        return sorted(set(_PLACEHOLDER.findall(self.load_template(template_path))))

    def render_template(self, template_path: str, context: Optional[Dict[str, Any]] = None) -> str:
        """Substitute ``{{key}}`` placeholders; a placeholder left without a value is an error."""
        context = context or {}
        template = self.load_template(template_path)
        missing = [key for key in self.placeholders(template_path) if key not in context]
        if missing:
            raise TemplateError(
                f"Template '{template_path}' is missing values for: {', '.join(missing)}",
                template_path,
                {"missing": missing},
            )
        return _PLACEHOLDER.sub(lambda m: str(context.get(m.group(1), m.group(0))), template)


_template_loader = None

def get_template_loader() -> TemplateLoader:
    global _template_loader
    if _template_loader is None:
        _template_loader = TemplateLoader()
    return _template_loader
