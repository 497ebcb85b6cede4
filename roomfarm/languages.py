"""Room templates: which image, port and environment a language starts with."""

from typing import NamedTuple


class LanguageConfig(NamedTuple):
    image: str
    port: int
    env_vars: tuple = ()


LANGUAGES = {
    'node': LanguageConfig('node:18', 8080, ('NODE_ENV=development',)),
    'nodejs': LanguageConfig('node:18', 8080, ('NODE_ENV=development',)),
    'expressjs': LanguageConfig('node:18', 8080, ('NODE_ENV=development',)),
    'python': LanguageConfig('python:3.10', 5000, ('FLASK_ENV=development',)),
    'cpp': LanguageConfig('gcc:13', 8080),
    'java': LanguageConfig('openjdk:17', 8080, ('JAVA_OPTS=-Xmx512m',)),
    'go': LanguageConfig('golang:1.19', 8080),
    'reactjs': LanguageConfig('node:18', 5173, ('HOST=0.0.0.0', 'PORT=5173')),
    'nextjs': LanguageConfig('node:18', 3000, ('HOST=0.0.0.0',)),
}


def get_language_config(language):
    if not language:
        return None
    return LANGUAGES.get(str(language).strip().lower())
