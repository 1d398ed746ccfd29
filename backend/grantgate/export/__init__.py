from grantgate.export.markdown import ExportRenderError, render_markdown

__all__ = ["ExportRenderError", "render_markdown"]
