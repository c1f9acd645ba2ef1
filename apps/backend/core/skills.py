"""
Skill vocabulary and alias normalization.

Used when building scraped jobs (skill extraction from descriptions) and when
matching candidate skills against job skills.
"""
import re
from typing import Iterable, List, Optional, Set

# alias -> canonical
SKILL_ALIASES = {
    'js': 'javascript',
    'ecmascript': 'javascript',
    'ts': 'typescript',
    'react.js': 'react',
    'reactjs': 'react',
    'react js': 'react',
    'vue.js': 'vue',
    'vuejs': 'vue',
    'angular.js': 'angular',
    'angularjs': 'angular',
    'node': 'node.js',
    'nodejs': 'node.js',
    'node js': 'node.js',
    'next': 'next.js',
    'nextjs': 'next.js',
    'golang': 'go',
    'py': 'python',
    'python3': 'python',
    'postgres': 'postgresql',
    'psql': 'postgresql',
    'mongo': 'mongodb',
    'k8s': 'kubernetes',
    'kube': 'kubernetes',
    'amazon web services': 'aws',
    'gcp': 'google cloud',
    'google cloud platform': 'google cloud',
    'ms azure': 'azure',
    'c sharp': 'c#',
    'csharp': 'c#',
    'dotnet': '.net',
    'cpp': 'c++',
    'ml': 'machine learning',
    'dl': 'deep learning',
    'nlp': 'natural language processing',
    'tf': 'tensorflow',
    'sklearn': 'scikit-learn',
    'scikit learn': 'scikit-learn',
    'ci/cd': 'ci/cd',
    'cicd': 'ci/cd',
    'rest': 'rest api',
    'restful': 'rest api',
    'restful api': 'rest api',
    'gql': 'graphql',
    'tailwindcss': 'tailwind',
    'tailwind css': 'tailwind',
    'ror': 'ruby on rails',
    'rails': 'ruby on rails',
}

KNOWN_SKILLS = {
    'python', 'java', 'javascript', 'typescript', 'go', 'rust', 'ruby', 'php',
    'scala', 'kotlin', 'swift', 'c#', 'c++', '.net', 'sql', 'react', 'vue',
    'angular', 'svelte', 'node.js', 'next.js', 'django', 'flask', 'fastapi',
    'spring', 'ruby on rails', 'graphql', 'rest api', 'postgresql', 'mysql',
    'mongodb', 'redis', 'elasticsearch', 'kafka', 'rabbitmq', 'aws', 'azure',
    'google cloud', 'docker', 'kubernetes', 'terraform', 'ansible', 'ci/cd',
    'linux', 'git', 'machine learning', 'deep learning',
    'natural language processing', 'tensorflow', 'pytorch', 'scikit-learn',
    'pandas', 'spark', 'airflow', 'snowflake', 'dbt', 'tableau', 'figma',
    'html', 'css', 'tailwind', 'sass', 'jest', 'cypress', 'selenium',
    'microservices', 'distributed systems', 'data engineering', 'devops',
}

# Too ambiguous to detect in prose; still valid as explicit skills
AMBIGUOUS_TERMS = {'go', 'ts', 'js', 'py', 'ml', 'dl', 'tf', 'rest', 'node', 'next', 'kube', 'rails', 'spring', 'swift', 'git'}

_SPLIT_RE = re.compile(r'[\s/_\-]+')


def normalize_skill(skill: Optional[str]) -> str:
    """Lower-case, collapse whitespace and map aliases to the canonical name."""
    if not skill:
        return ''
    cleaned = re.sub(r'\s+', ' ', skill.strip().lower())
    cleaned = cleaned.strip('.,;:()')
    return SKILL_ALIASES.get(cleaned, cleaned)


def normalize_skills(skills: Iterable[str]) -> List[str]:
    """Canonicalize and de-duplicate, preserving first-seen order."""
    seen: Set[str] = set()
    result = []
    for skill in skills or []:
        canonical = normalize_skill(skill)
        if canonical and canonical not in seen:
            seen.add(canonical)
            result.append(canonical)
    return result


def _core_token(skill: str) -> str:
    # "react.js" -> "react", "node.js" -> "node"
    return re.sub(r'\.(js|ts|net)$', '', skill)


def skills_match(a: str, b: str) -> bool:
    """
    True when two skills refer to the same thing.

    Handles aliases and partial containment on token boundaries, so "React"
    matches "React.js" and "react native" but "java" does not match
    "javascript".
    """
    na, nb = normalize_skill(a), normalize_skill(b)
    if not na or not nb:
        return False
    if na == nb:
        return True
    ca, cb = _core_token(na), _core_token(nb)
    if ca == cb:
        return True
    short, long_ = (ca, cb) if len(ca) <= len(cb) else (cb, ca)
    if len(short) < 2:
        return False
    tokens = _SPLIT_RE.split(long_)
    return short in tokens or bool(re.search(rf'(?<![a-z0-9+#]){re.escape(short)}(?![a-z0-9+#])', long_))


def extract_skills(text: Optional[str], vocabulary: Optional[Iterable[str]] = None) -> List[str]:
    """Find known skills (and their aliases) mentioned in free text."""
    if not text:
        return []
    haystack = ' ' + re.sub(r'\s+', ' ', text.lower()) + ' '
    terms = set(vocabulary) if vocabulary else KNOWN_SKILLS | set(SKILL_ALIASES)
    found = []
    for term in sorted(terms, key=len, reverse=True):
        if len(term) < 2 or term in AMBIGUOUS_TERMS:
            continue
        pattern = rf'(?<![a-z0-9+#.]){re.escape(term)}(?![a-z0-9+#]|\.[a-z])'
        if re.search(pattern, haystack):
            found.append(normalize_skill(term))
    return normalize_skills(found)
