"""
Project Fixer: one ordered, idempotent repair pass over a generated project.

Whatever the model produced, the project is forced onto a single target:
Vite + React + TypeScript, Tailwind for styling, `@/` aliased to `./src`.
Each step reports a fix only when a file on disk actually changed, so a
second run over an untouched directory reports nothing.
"""
import json, logging, re, textwrap
from pathlib import Path

from forge.models import FixResult

log = logging.getLogger("fixer")

ALIAS      = "@"
SOURCE_DIR = "src"
SOURCE_EXT = (".ts", ".tsx", ".js", ".jsx")
SKIP_DIRS  = {"node_modules", "dist", ".git"}

RUNTIME_BASELINE = {
    "react":     "^18.3.1",
    "react-dom": "^18.3.1",
}
DEV_BASELINE = {
    "@types/react":                     "^18.3.3",
    "@types/react-dom":                 "^18.3.0",
    "@typescript-eslint/eslint-plugin": "^7.2.0",
    "@typescript-eslint/parser":        "^7.2.0",
    "@vitejs/plugin-react":             "^4.2.1",
    "autoprefixer":                     "^10.4.17",
    "eslint":                           "^8.57.0",
    "eslint-plugin-react-hooks":        "^4.6.0",
    "eslint-plugin-react-refresh":      "^0.4.6",
    "postcss":                          "^8.4.35",
    "tailwindcss":                      "^3.4.1",
    "typescript":                       "^5.2.2",
    "vite":                             "^5.2.0",
}
BASELINE_SCRIPTS = {
    "dev":     "vite",
    "build":   "vite build",
    "preview": "vite preview",
    "lint":    "eslint . --ext ts,tsx --report-unused-disable-directives --max-warnings 0",
}
BUILD_TOOLS = {"tailwindcss", "postcss", "autoprefixer", "typescript", "vite"}

# Packages the model likes to import without declaring them
KNOWN_RUNTIME_PACKAGES = {
    "@heroicons/react": "^2.1.0",
    "clsx":             "^2.1.0",
    "framer-motion":    "^11.0.0",
    "lucide-react":     "^0.400.0",
    "react-hot-toast":  "^2.4.1",
    "react-icons":      "^5.0.0",
    "react-router-dom": "^6.22.0",
    "tailwind-merge":   "^2.2.0",
    "zustand":          "^4.5.0",
}

IMPORT_DIRS = ("components", "utils", "libs", "pages")
PARENT_IMPORT_RE = re.compile(
    r"""(\bfrom\s+|\bimport\s+|\bimport\(\s*|\brequire\(\s*)(['"])"""
    r"""(?:\.\./)+(""" + "|".join(IMPORT_DIRS) + r""")/([^'"\n]+)\2"""
)
ALIAS_EXT_RE = re.compile(
    r"""(\bfrom\s+|\bimport\s+)(['"])(""" + re.escape(ALIAS) + r"""/[^'"\n]+?)\.(?:tsx?|jsx?)\2"""
)
BARE_IMPORT_RE = re.compile(r"""(?:\bfrom\s+|\bimport\s+|\brequire\(\s*)['"]([^'"./\n][^'"\n]*)['"]""")

VITE_CONFIG_FILES = ("vite.config.ts", "vite.config.js", "vite.config.mjs")
NEXT_SCAFFOLD = (
    "next.config.js",
    "next.config.mjs",
    "next-env.d.ts",
    "app/layout.tsx",
    "app/page.tsx",
    "app/globals.css",
)
STRAY_STYLESHEETS = (
    "global.css",
    "globals.css",
    "styles/globals.css",
    "styles/global.css",
)
CANONICAL_STYLESHEET = f"{SOURCE_DIR}/styles/globals.css"
ESSENTIAL_FILES = ("package.json", "index.html", f"{SOURCE_DIR}/main.tsx", "vite.config.ts")


# ── Templates ─────────────────────────────────────────────────────────────────

TAILWIND_CONFIG = textwrap.dedent("""\
    /** @type {import('tailwindcss').Config} */
    export default {
      content: [
        "./index.html",
        "./src/**/*.{js,ts,jsx,tsx}",
      ],
      theme: {
        extend: {
          colors: {
            primary: '#3B82F6',
            secondary: '#1E40AF',
            light: '#6B7280',
            dark: '#1F2937',
          },
          container: {
            center: true,
            padding: '1rem',
          },
        },
      },
      plugins: [],
    }
    """)

POSTCSS_CONFIG = textwrap.dedent("""\
    export default {
      plugins: {
        tailwindcss: {},
        autoprefixer: {},
      },
    }
    """)

INDEX_CSS_TAILWIND = textwrap.dedent("""\
    @tailwind base;
    @tailwind components;
    @tailwind utilities;

    @layer base {
      body {
        @apply font-sans antialiased;
      }
    }

    @layer components {
      .btn {
        @apply px-6 py-3 rounded-lg font-medium text-center transition-all duration-300 focus:outline-none focus:ring-2 focus:ring-offset-2;
      }
      .btn-primary {
        @apply bg-primary text-white hover:bg-blue-600 focus:ring-primary;
      }
      .btn-secondary {
        @apply bg-transparent text-primary border-2 border-primary hover:bg-primary hover:text-white;
      }
    }
    """)

INDEX_CSS_PLAIN = textwrap.dedent("""\
    :root {
      font-family: Inter, system-ui, Avenir, Helvetica, Arial, sans-serif;
      line-height: 1.5;
      font-weight: 400;
    }

    body {
      margin: 0;
      min-width: 320px;
      min-height: 100vh;
    }
    """)


def vite_config() -> str:
    return textwrap.dedent(f"""\
        import {{ defineConfig }} from 'vite'
        import react from '@vitejs/plugin-react'
        import path from 'path'

        export default defineConfig({{
          plugins: [react()],
          resolve: {{
            alias: {{
              '{ALIAS}': path.resolve(__dirname, './{SOURCE_DIR}'),
            }},
          }},
          server: {{
            port: 3000,
            host: true,
          }},
          build: {{
            outDir: 'dist',
            sourcemap: false,
          }},
        }})
        """)


def ts_config() -> str:
    cfg = {
        "compilerOptions": {
            "target": "ES2020",
            "useDefineForClassFields": True,
            "lib": ["ES2020", "DOM", "DOM.Iterable"],
            "module": "ESNext",
            "skipLibCheck": True,
            "moduleResolution": "bundler",
            "allowImportingTsExtensions": True,
            "resolveJsonModule": True,
            "isolatedModules": True,
            "noEmit": True,
            "jsx": "react-jsx",
            "strict": True,
            "noUnusedLocals": True,
            "noUnusedParameters": True,
            "noFallthroughCasesInSwitch": True,
            "baseUrl": ".",
            "paths": {f"{ALIAS}/*": [f"./{SOURCE_DIR}/*"]},
        },
        "include": [SOURCE_DIR],
    }
    return json.dumps(cfg, indent=2) + "\n"


def _slug(name: str) -> str:
    return re.sub(r"[^a-z0-9-]", "-", name.lower())[:40].strip("-") or "app"


def _package_name(specifier: str) -> str:
    parts = specifier.split("/")
    return "/".join(parts[:2]) if specifier.startswith("@") else parts[0]


# ── ProjectFixer ──────────────────────────────────────────────────────────────

class ProjectFixer:
    def __init__(self, project_dir: Path, project_id: str, use_tailwind: bool = True):
        self.root         = Path(project_dir)
        self.project_id   = project_id
        self.use_tailwind = use_tailwind
        self.fixes:       list[str] = []
        self.errors:      list[str] = []
        self.fixed_files: list[str] = []

    def fix(self) -> FixResult:
        steps = [
            ("package.json",         self._fix_package_json),
            ("styling config",       self._fix_styling_config),
            ("import paths",         self._fix_import_paths),
            ("global stylesheet",    self._fix_index_css),
            ("vite.config.ts",       self._fix_vite_config),
            ("tsconfig.json",        self._fix_ts_config),
            ("conflicting files",    self._remove_conflicting_files),
            ("misplaced stylesheet", self._relocate_stylesheets),
        ]
        log.info(f"🔧 Fixing project {self.project_id}")
        for label, step in steps:
            try:
                step()
            except Exception as e:
                self.errors.append(f"Failed to fix {label}: {e}")
                log.warning(f"   ❌ {label}: {e}")
        log.info(f"   ✅ {len(self.fixes)} fix(es), {len(self.errors)} error(s)")
        return FixResult(success=not self.errors, fixes=list(self.fixes),
                         errors=list(self.errors), fixed_files=list(self.fixed_files))

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _record(self, note: str, rel: str):
        self.fixes.append(note)
        if rel not in self.fixed_files:
            self.fixed_files.append(rel)
        log.info(f"   ✎ {note}")

    def _sync(self, rel: str, content: str, note: str) -> bool:
        """Write `content` to `rel` unless it is already there."""
        fp = self.root / rel
        if fp.is_file() and fp.read_text(encoding="utf-8") == content:
            return False
        fp.parent.mkdir(parents=True, exist_ok=True)
        fp.write_text(content, encoding="utf-8")
        self._record(note, rel)
        return True

    def _source_files(self):
        src = self.root / SOURCE_DIR
        if not src.is_dir():
            return []
        return sorted(
            p for p in src.rglob("*")
            if p.is_file() and p.suffix in SOURCE_EXT
            and not SKIP_DIRS.intersection(p.relative_to(self.root).parts)
        )

    def _imported_packages(self) -> set:
        found = set()
        for fp in self._source_files():
            try:
                text = fp.read_text(encoding="utf-8", errors="replace")
            except OSError:
                continue
            for m in BARE_IMPORT_RE.finditer(text):
                specifier = m.group(1)
                if not specifier.startswith(ALIAS + "/"):
                    found.add(_package_name(specifier))
        return found

    # ── Step 1: package.json ──────────────────────────────────────────────────

    def _fix_package_json(self):
        fp = self.root / "package.json"
        original = fp.read_text(encoding="utf-8") if fp.exists() else ""
        pkg = json.loads(original) if original.strip() else {
            "name": _slug(self.project_id), "private": True, "version": "0.0.0",
        }
        if not isinstance(pkg, dict):
            raise ValueError("package.json is not a JSON object")

        notes = normalize_manifest(pkg, self._imported_packages())
        updated = json.dumps(pkg, indent=2) + "\n"
        if updated == original:
            return
        fp.write_text(updated, encoding="utf-8")
        for n in notes:
            log.info(f"   · {n}")
        self._record("Fixed package.json dependencies and scripts" if original
                     else "Created package.json", "package.json")

    # ── Step 2: tailwind / postcss ────────────────────────────────────────────

    def _fix_styling_config(self):
        self._sync("tailwind.config.js", TAILWIND_CONFIG, "Fixed tailwind.config.js")
        self._sync("postcss.config.js",  POSTCSS_CONFIG,  "Fixed postcss.config.js")

    # ── Step 3: import paths ──────────────────────────────────────────────────

    def _fix_import_paths(self):
        for fp in self._source_files():
            rel = fp.relative_to(self.root).as_posix()
            try:
                content = fp.read_text(encoding="utf-8")
                fixed   = rewrite_imports(content)
                if fixed != content:
                    fp.write_text(fixed, encoding="utf-8")
                    self._record(f"Fixed imports in {rel}", rel)
            except (OSError, UnicodeDecodeError) as e:
                self.errors.append(f"Failed to fix imports in {rel}: {e}")

    # ── Step 4: src/index.css ─────────────────────────────────────────────────

    def _fix_index_css(self):
        css = INDEX_CSS_TAILWIND if self.use_tailwind else INDEX_CSS_PLAIN
        self._sync(f"{SOURCE_DIR}/index.css", css, f"Fixed {SOURCE_DIR}/index.css")

    # ── Steps 5 + 6: bundler / type-checker config (same alias) ──────────────

    def _fix_vite_config(self):
        self._sync("vite.config.ts", vite_config(), "Fixed vite.config.ts")

    def _fix_ts_config(self):
        self._sync("tsconfig.json", ts_config(), "Fixed tsconfig.json")

    # ── Step 7: Next.js leftovers in a Vite project ──────────────────────────

    def _remove_conflicting_files(self):
        if not any((self.root / f).is_file() for f in VITE_CONFIG_FILES):
            return
        for rel in NEXT_SCAFFOLD:
            fp = self.root / rel
            if fp.is_file():
                fp.unlink()
                self._record(f"Removed conflicting Next.js file: {rel}", rel)
        app_dir = self.root / "app"
        if app_dir.is_dir() and not any(app_dir.iterdir()):
            app_dir.rmdir()
            self.fixes.append("Removed empty app/ directory")

    # ── Step 8: stray global stylesheets ─────────────────────────────────────

    def _relocate_stylesheets(self):
        target = self.root / CANONICAL_STYLESHEET
        for rel in STRAY_STYLESHEETS:
            src = self.root / rel
            if not src.is_file() or target.exists():
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            src.rename(target)
            self._record(f"Moved {rel} to {CANONICAL_STYLESHEET}", CANONICAL_STYLESHEET)
        styles = self.root / "styles"
        if styles.is_dir() and not any(styles.iterdir()):
            styles.rmdir()
            self.fixes.append("Removed empty styles/ directory")


# ── Pure transforms (exercised directly by tests) ────────────────────────────

def normalize_manifest(pkg: dict, imported: set = frozenset()) -> list:
    """Force the dependency/script baseline onto a parsed package.json in place."""
    notes = []
    deps = dict(pkg.get("dependencies") or {})
    dev  = dict(pkg.get("devDependencies") or {})

    for name in list(deps):
        if name in BUILD_TOOLS or name.startswith("@types/"):
            version = deps.pop(name)
            if name in dev:
                notes.append(f"Removed duplicate {name} from dependencies")
            else:
                dev[name] = version
                notes.append(f"Moved {name} to devDependencies")

    deps.update(RUNTIME_BASELINE)
    for name in list(dev):
        if name in deps:
            del dev[name]
            notes.append(f"Removed duplicate {name} from devDependencies")
    dev.update(DEV_BASELINE)

    for name in sorted(imported):
        if name in KNOWN_RUNTIME_PACKAGES and name not in deps and name not in dev:
            deps[name] = KNOWN_RUNTIME_PACKAGES[name]
            notes.append(f"Added missing dependency {name}")

    pkg["type"]            = "module"
    pkg["scripts"]         = {**(pkg.get("scripts") or {}), **BASELINE_SCRIPTS}
    pkg["dependencies"]    = deps
    pkg["devDependencies"] = dev
    return notes


def rewrite_imports(content: str) -> str:
    """`../components/X` → `@/components/X`; drop extensions on alias imports."""
    out = PARENT_IMPORT_RE.sub(lambda m: f"{m.group(1)}{m.group(2)}{ALIAS}/{m.group(3)}/{m.group(4)}{m.group(2)}", content)
    return ALIAS_EXT_RE.sub(r"\1\2\3\2", out)


def find_missing_essentials(project_dir: Path) -> list:
    root = Path(project_dir)
    return [f for f in ESSENTIAL_FILES if not (root / f).exists()]


def fix_project(project_dir: Path, project_id: str, use_tailwind: bool = True) -> FixResult:
    return ProjectFixer(project_dir, project_id, use_tailwind).fix()
