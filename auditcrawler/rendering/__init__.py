from auditcrawler.rendering.backend import Renderer
from auditcrawler.rendering.pool import RenderPool, RendererHandle
