#!/usr/bin/env python3
# https://docs.brew.sh/Formula-Cookbook#homebrew-terminology
# https://rubydoc.brew.sh/Formulary.html
# https://github.com/Homebrew/brew/blob/main/Library/Homebrew/formulary.rb
# https://github.com/Homebrew/brew/blob/main/Library/Homebrew/tab.rb
'''
Formula & cask resolution engine for a lightweight Homebrew replacement
'''
import os
import re  # compile, match, sub, finditer
import sys  # stdout, stderr, stdout.isatty()
import json  # load, loads, dumps
import hashlib  # sha256, md5
import platform  # system, machine, mac_ver
import threading  # RLock
import subprocess as shell  # clang, gcc, xcodebuild
from contextlib import contextmanager, redirect_stdout
from datetime import date, datetime  # today(), now(), fromtimestamp()
from functools import cached_property, total_ordering
from io import StringIO  # Log summary, loader output capture
from tarfile import TarError, open as openTarfile
from urllib import request as Req  # urlretrieve
from urllib.error import URLError
from urllib.parse import urlparse
from configparser import ConfigParser as IniFile
from argparse import (
    ArgumentParser, Action,
    Namespace as ArgParams,
    _ActionsContainer as ArgsContainer,
    _MutuallyExclusiveGroup as ArgsXorGroup,
)
from typing import (
    Any, Callable, Iterator, NamedTuple, Optional
)

VERSION = '0.9'


def _envFlag(key: str) -> 'bool|None':
    ''' `None` if unset, otherwise anything but "", "0", "no", "false" '''
    value = os.environ.get(key)
    if value is None:
        return None
    return value.strip().lower() not in ('', '0', 'no', 'false', 'off')


class Env:
    IS_TTY = sys.stdout.isatty()
    PREFIX = os.environ.get('BREW_PY_PREFIX', '').rstrip('/')
    API_DOMAIN = os.environ.get('BREW_PY_API_DOMAIN', '').rstrip('/')
    BOTTLE_DOMAIN = os.environ.get('BREW_PY_BOTTLE_DOMAIN', '').rstrip('/')
    NO_INSTALL_FROM_API = _envFlag('BREW_PY_NO_INSTALL_FROM_API')
    USE_INTERNAL_API = _envFlag('BREW_PY_USE_INTERNAL_API')
    FORBID_PACKAGES_FROM_PATHS = _envFlag('BREW_PY_FORBID_PACKAGES_FROM_PATHS')


def main() -> None:
    args = parseArgs()
    Log.LEVEL = 3 if args.verbose else Log.LEVEL - args.quiet
    if not Env.PREFIX:
        Log.error('env BREW_PY_PREFIX not set')
        exit(42)

    formulary = Formulary.fromEnv()
    Log.beginErrorSummary()
    try:
        with formulary.system.simulate(os=args.os, arch=args.arch):
            args.func(formulary, args)
    except FormulaError as e:
        Log.error(e)
        exit(1)
    finally:
        Log.dumpErrorSummary()


# -----------------------------------
#  CLI functions
# -----------------------------------

def cli_info(formulary: 'Formulary', args: ArgParams) -> None:
    ''' Resolve formula and print its metadata. '''
    Log.debug('[DEBUG] reference kind:', Reference.classify(
        args.formula, formulary.paths))
    f = formulary.resolve(args.formula, args.spec, preferStub=args.stub)
    Log.main(f'{f.fullName}: {f.activeSpecName or "-"} {f.version}')
    Log.info('Loaded from:', f.provenance, f'({f.path})')
    if f.desc:
        Log.info(f.desc)
    if f.homepage:
        Log.info(f.homepage)
    Log.info('Bottle:', f.bottleTag if f.hasBottle() else 'no')
    if f.kegOnly:
        Log.info('Keg-only:', f.kegOnly.message)
    if f.deprecated:
        Log.warn(f.name, 'has been', f.deprecation.message,  # type: ignore
                 summary=True)
    if f.disabled:
        Log.warn(f.name, 'has been', f.disable.message,  # type: ignore
                 summary=True)

    Log.info('Dependencies:')
    Log.info(Txt.prettyList([str(x) for x in f.dependencies]) or '  <none>')
    if f.requirements:
        Log.info('Requirements:')
        Log.info(Txt.prettyList([str(x) for x in f.requirements]))
    if f.invalidArch:
        Log.warn('unsupported on', formulary.system.current.bottleTag + ':',
                 ', '.join(f.invalidArch), summary=True)
    if f.caveats:
        Log.info('Caveats:')
        Log.info(f.caveats.rstrip())
    if f.build and f.build.tabfile:
        Log.info(f.build)


def cli_path(formulary: 'Formulary', args: ArgParams) -> None:
    ''' Print path to formula source file. '''
    Log.main(formulary.path(args.formula))


def cli_canonical_name(formulary: 'Formulary', args: ArgParams) -> None:
    ''' Print canonical name (aliases, renames and migrations resolved). '''
    Log.main(formulary.canonicalName(args.formula))


def cli_tab(formulary: 'Formulary', args: ArgParams) -> None:
    ''' Print install receipt (or an empty one if not installed). '''
    if args.cask:
        tab = formulary.tabFor(formulary.cask(args.formula))
    else:
        tab = formulary.tabFor(formulary.resolve(args.formula))
    Log.main(tab.toJson(indent=2))


# -----------------------------------
#  CLI
# -----------------------------------

def parseArgs() -> ArgParams:
    cli = Cli(description=__doc__)
    cli.arg_bool('-v', '--verbose', help='increase verbosity')
    cli.arg('-q', '--quiet', action='count', default=0, help='''
        reduce verbosity (-q up to -qqq)''')
    cli.arg('--version', action='version', version=f'%(prog)s {VERSION}')
    cli.arg('--os', choices=['macos', 'linux'], help='''
        Simulate operating system during resolution''')
    cli.arg('--arch', choices=['arm', 'intel'], help='''
        Simulate CPU architecture during resolution''')

    # info
    cmd = cli.subcommand('info', cli_info, aliases=['abv'])
    cmd.arg('formula', help='Name, tap/name, path, URL or bottle file')
    grp = cmd.xor_group()
    grp.arg('--HEAD', dest='spec', action='store_const', const='head',
            help='Use head spec instead of stable')
    grp.arg('--stub', action='store_true', help='''
        Prefer minimal stub from internal API (if enabled)''')

    # path
    cmd = cli.subcommand('path', cli_path, aliases=['formula'])
    cmd.arg('formula', help='Name, tap/name, path, URL or bottle file')

    # canonical-name
    cmd = cli.subcommand('canonical-name', cli_canonical_name)
    cmd.arg('formula', help='Name, alias, renamed or migrated formula')

    # tab
    cmd = cli.subcommand('tab', cli_tab, aliases=['receipt'])
    cmd.arg('formula', help='Installed formula name (or cask token)')
    cmd.arg_bool('--cask', help='Treat argument as cask token')

    return cli.parse()


# -----------------------------------
#  Cli Helper
# -----------------------------------

class CliQuickArg(ArgsContainer):
    def arg(self, *args: Any, **kwargs: Any) -> Action:
        return self.add_argument(*args, **kwargs)

    def arg_bool(self, *args: Any, **kwargs: Any) -> Action:
        return self.add_argument(*args, **kwargs, action='store_true')

    def xor_group(self, **kwargs: Any) -> 'CliXorGroup':
        group = CliXorGroup(self, **kwargs)
        self._mutually_exclusive_groups.append(group)
        return group


class CliXorGroup(ArgsXorGroup, CliQuickArg):
    pass


class Cli(ArgumentParser, CliQuickArg):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.set_defaults(func=lambda *_: self.print_help(sys.stdout))

    def subcommand(
        self, name: str, fn: 'Callable[[Formulary, ArgParams], None]',
        *args: Any, meta: str = 'command', **kwargs: Any
    ) -> 'Cli':
        if not hasattr(self, 'sub_parser'):
            self.sub_parser = self.add_subparsers(metavar=meta, dest=meta)

        desc = fn.__doc__ or ''
        cmd = self.sub_parser.add_parser(
            name, *args, help=desc, description=desc.strip(), **kwargs)
        cmd.set_defaults(func=fn)
        return cmd

    def parse(self) -> ArgParams:
        return self.parse_args()


# -----------------------------------
#  System configuration
# -----------------------------------

class Platform(NamedTuple):
    os: str  # macos | linux
    arch: str  # arm | intel
    osVersion: str = '0'  # macOS only, e.g. '10.15' or '15'

    ALL_OS = {
        'yosemite': '10.10',
        'el_capitan': '10.11',
        'sierra': '10.12',
        'high_sierra': '10.13',
        'mojave': '10.14',
        'catalina': '10.15',
        'big_sur': '11',
        'monterey': '12',
        'ventura': '13',
        'sonoma': '14',
        'sequoia': '15',
        'tahoe': '26',
    }

    @property
    def isMac(self) -> bool:
        return self.os == 'macos'

    @property
    def isArm(self) -> bool:
        return self.arch == 'arm'

    @property
    def osName(self) -> str:
        ''' e.g. "sonoma" (empty string on linux or unknown version) '''
        if not self.isMac:
            return ''
        return {v: k for k, v in Platform.ALL_OS.items()}.get(
            self.osVersion, '')

    @property
    def cacheTag(self) -> str:
        ''' e.g. "macos_arm". Used to separate per-platform caches. '''
        return f'{self.os}_{self.arch}'

    @property
    def bottleTag(self) -> str:
        ''' e.g. "arm64_sonoma", "sonoma", "x86_64_linux" '''
        if self.isMac:
            prefix = 'arm64_' if self.isArm else ''  # arm64_tahoe OR tahoe
            return prefix + (self.osName or 'unknown')
        return ('arm64' if self.isArm else 'x86_64') + '_linux'

    def osVersionCmp(self, op: str, other: str) -> bool:
        ''' Compare macOS versions numerically, e.g. "10.9" < "10.15" '''
        return Utils.cmpVersion(Utils.versionList(self.osVersion), op,
                                Utils.versionList(other))


class SimulateSystem:
    '''
    Ambient (os, arch) pair used for cache keys and loader decisions.
    Overrides stack: innermost wins and the outer value is restored on exit,
    even if the block raises.
    '''
    ARCH_ALIASES = {'arm64': 'arm', 'aarch64': 'arm',
                    'x86_64': 'intel', 'amd64': 'intel'}

    def __init__(self, host: 'Platform|None' = None) -> None:
        self.host = host or SimulateSystem.detect()
        self._stack = []  # type: list[Platform]

    @staticmethod
    def detect() -> Platform:
        machine = platform.machine().lower()
        arch = SimulateSystem.ARCH_ALIASES.get(machine, machine)
        if platform.system() == 'Darwin':
            return Platform('macos', arch, SimulateSystem.macOSVersion())
        return Platform('linux', 'arm' if arch == 'arm' else 'intel')

    @staticmethod
    def macOSVersion() -> str:
        major, minor, *_ = (platform.mac_ver()[0] + '.0').split('.')
        return ('10.' + minor) if major == '10' else major

    @property
    def current(self) -> Platform:
        return self._stack[-1] if self._stack else self.host

    @property
    def simulating(self) -> bool:
        return bool(self._stack)

    @contextmanager
    def simulate(
        self, *, os: 'str|None' = None, arch: 'str|None' = None,
        osVersion: 'str|None' = None,
    ) -> Iterator[Platform]:
        ''' Temporarily replace (os, arch). `None` keeps the current value. '''
        base = self.current
        arch = SimulateSystem.ARCH_ALIASES.get(arch or '', arch)
        if os not in (None, 'macos', 'linux'):
            raise ValueError(f'unknown os "{os}"')
        if arch not in (None, 'arm', 'intel'):
            raise ValueError(f'unknown arch "{arch}"')

        newOs = os or base.os
        if osVersion is None:
            if newOs == base.os:
                osVersion = base.osVersion
            elif newOs == 'macos':
                osVersion = list(Platform.ALL_OS.values())[-1]  # newest
            else:
                osVersion = '0'
        new = Platform(newOs, arch or base.arch, osVersion)

        self._stack.append(new)
        try:
            yield new
        finally:
            self._stack.pop()


class DevelopmentTools:
    ''' Compiler versions queried by `depends_on ... if` clauses '''
    _SOFTWARE_VERSIONS = {}  # type: dict[str, list[int]]

    @staticmethod
    def clangBuildVersion() -> list[int]:
        return DevelopmentTools._SOFTWARE_VERSIONS.get('clang') or \
            DevelopmentTools._SOFTWARE_VERSIONS.setdefault(
                'clang', Bash.getVersion(
                    ['clang', '--version'], r'clang-([\d.]+)'))

    @staticmethod
    def gccVersion() -> list[int]:
        return DevelopmentTools._SOFTWARE_VERSIONS.get('gcc') or \
            DevelopmentTools._SOFTWARE_VERSIONS.setdefault(
                'gcc', Bash.getVersion(['gcc', '-v'], r'gcc version ([\d.]+)'))

    @staticmethod
    def hasXcodeVer(version: str) -> bool:
        currentVer = DevelopmentTools._SOFTWARE_VERSIONS.get('xcode') or \
            DevelopmentTools._SOFTWARE_VERSIONS.setdefault(
                'xcode', Bash.getVersion(
                    ['xcodebuild', '-version'], r'Xcode ([\d.]+)'))
        return currentVer >= Utils.versionList(version)


# -----------------------------------
#  Config
# -----------------------------------

class Config(NamedTuple):
    API_ENABLED: bool = True
    API_INTERNAL: bool = False
    API_DOMAIN: str = 'https://formulae.brew.sh/api'
    BOTTLE_DOMAIN: str = 'https://ghcr.io/v2/homebrew/core'
    FORBID_PATHS: bool = False
    FACTORY_CACHE: bool = True

    @staticmethod
    def load(fname: str) -> 'Config':
        if not os.path.exists(fname):
            os.makedirs(os.path.dirname(fname) or '.', exist_ok=True)
            with open(fname, 'w') as fp:
                fp.write('''
[api]
; whether formulae may be loaded from the JSON API (instead of local taps)
enabled = yes  ; default: yes
; whether minimal formula stubs may be used for bottle-only fetches
internal = no  ; default: no
domain = https://formulae.brew.sh/api

[bottle]
domain = https://ghcr.io/v2/homebrew/core

[load]
; reject formula files outside of the Cellar and installed taps
forbid_paths = no  ; default: no
; return the same formula instance for repeated lookups
factory_cache = yes  ; default: yes
''')
        ini = IniFile(inline_comment_prefixes=(';', '#'))
        ini.read(fname)
        default = Config()
        return Config(
            API_ENABLED=ini.getboolean(
                'api', 'enabled', fallback=default.API_ENABLED),
            API_INTERNAL=ini.getboolean(
                'api', 'internal', fallback=default.API_INTERNAL),
            API_DOMAIN=ini.get(
                'api', 'domain', fallback=default.API_DOMAIN).rstrip('/'),
            BOTTLE_DOMAIN=ini.get(
                'bottle', 'domain', fallback=default.BOTTLE_DOMAIN
            ).rstrip('/'),
            FORBID_PATHS=ini.getboolean(
                'load', 'forbid_paths', fallback=default.FORBID_PATHS),
            FACTORY_CACHE=ini.getboolean(
                'load', 'factory_cache', fallback=default.FACTORY_CACHE),
        ).withEnv()

    def withEnv(self) -> 'Config':
        ''' Apply `BREW_PY_*` environment overrides '''
        changes = {}  # type: dict[str, Any]
        if Env.NO_INSTALL_FROM_API is not None:
            changes['API_ENABLED'] = not Env.NO_INSTALL_FROM_API
        if Env.USE_INTERNAL_API is not None:
            changes['API_INTERNAL'] = Env.USE_INTERNAL_API
        if Env.FORBID_PACKAGES_FROM_PATHS is not None:
            changes['FORBID_PATHS'] = Env.FORBID_PACKAGES_FROM_PATHS
        if Env.API_DOMAIN:
            changes['API_DOMAIN'] = Env.API_DOMAIN
        if Env.BOTTLE_DOMAIN:
            changes['BOTTLE_DOMAIN'] = Env.BOTTLE_DOMAIN
        return self._replace(**changes)


class Paths(NamedTuple):
    ''' Directory layout below the install prefix '''
    ROOT: str

    @property
    def cellar(self) -> str:
        ''' Returns `@/Cellar` '''
        return os.path.join(self.ROOT, 'Cellar')

    @property
    def caskroom(self) -> str:
        ''' Returns `@/Caskroom` '''
        return os.path.join(self.ROOT, 'Caskroom')

    @property
    def opt(self) -> str:
        return os.path.join(self.ROOT, 'opt')

    @property
    def cache(self) -> str:
        return os.path.join(self.ROOT, 'cache')

    @property
    def formulaCache(self) -> str:
        ''' Returns `@/cache/Formula` (downloaded formula files) '''
        return os.path.join(self.cache, 'Formula')

    @property
    def apiCache(self) -> str:
        return os.path.join(self.cache, 'api')

    @property
    def taps(self) -> str:
        ''' Returns `@/Library/Taps` '''
        return os.path.join(self.ROOT, 'Library', 'Taps')

    @property
    def linkedKegs(self) -> str:
        ''' Returns `@/var/homebrew/linked` '''
        return os.path.join(self.ROOT, 'var', 'homebrew', 'linked')

    def rack(self, name: str) -> str:
        ''' Returns `@/Cellar/<name>` '''
        return os.path.join(self.cellar, name)

    def ensure(self) -> None:
        for x in (self.cellar, self.opt, self.cache, self.formulaCache,
                  self.apiCache, self.taps):
            os.makedirs(x, exist_ok=True)


# -----------------------------------
#  Errors
# -----------------------------------

class FormulaError(Exception):
    ''' Base class for all resolution failures '''


class FormulaUnavailableError(FormulaError):
    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f'No available formula with the name "{self.name}".'


class TapFormulaUnavailableError(FormulaUnavailableError):
    def __init__(self, tap: 'Tap', name: str) -> None:
        super().__init__(name)
        self.tap = tap

    def __str__(self) -> str:
        rv = f'No available formula with the name "{self.tap}/{self.name}".'
        if not self.tap.installed:
            rv += f'\nPlease tap it and then try again: brew tap {self.tap}'
        return rv


class FormulaUnreadableError(FormulaUnavailableError):
    ''' Script source raised an error while being evaluated '''

    def __init__(self, name: str, error: BaseException) -> None:
        super().__init__(name)
        self.formulaError = error

    def __str__(self) -> str:
        return f'{self.name}: {self.formulaError}'


class TapFormulaUnreadableError(FormulaUnreadableError):
    def __init__(self, tap: 'Tap', name: str, error: BaseException) -> None:
        super().__init__(name, error)
        self.tap = tap

    def __str__(self) -> str:
        return f'{self.tap}/{self.name}: {self.formulaError}'


class FormulaClassUnavailableError(FormulaUnavailableError):
    ''' Script evaluated fine but did not define the expected class '''

    def __init__(
        self, name: str, path: str, className: str, classList: list[str],
    ) -> None:
        super().__init__(name)
        self.path = path
        self.className = className
        self.classList = classList

    def __str__(self) -> str:
        if not self.classList:
            found = 'but found no classes.'
        else:
            found = 'but only found: ' + ', '.join(self.classList)
        return (f'{super().__str__()} In formula file: {self.path}\n'
                f'Expected to find class {self.className}, {found}')


class TapFormulaClassUnavailableError(FormulaClassUnavailableError):
    def __init__(
        self, tap: 'Tap', name: str, path: str, className: str,
        classList: list[str],
    ) -> None:
        super().__init__(name, path, className, classList)
        self.tap = tap


class TapFormulaAmbiguityError(FormulaError):
    ''' Unqualified name exists in more than one (non-default) tap '''

    def __init__(self, name: str, loaders: 'list[FormulaLoader]') -> None:
        self.name = name
        self.taps = [x.tap for x in loaders]
        self.formulae = [f'{tap}/{name}' for tap in self.taps]
        super().__init__(str(self))

    def __str__(self) -> str:
        return '\n'.join([
            'Formulae found in multiple taps:',
            Txt.prettyList(self.formulae, prefix='  * '),
            '',
            'Please use the fully-qualified name (e.g. '
            f'{self.formulae[0]}) to refer to a specific formula.',
        ])


class BottleFormulaUnavailableError(FormulaError):
    def __init__(self, bottlePath: str, formulaPath: str) -> None:
        super().__init__(bottlePath)
        self.bottlePath = bottlePath
        self.formulaPath = formulaPath

    def __str__(self) -> str:
        return (f'This bottle does not contain the formula file:\n'
                f'  {self.bottlePath}\n  {self.formulaPath}')


class FormulaSpecificationError(FormulaError):
    pass


class UnsupportedInstallationMethodError(FormulaError):
    pass


class MigrationCycleError(FormulaError):
    ''' Tap migration chain revisits a name (recovered with a warning) '''

    def __init__(self, chain: list[str]) -> None:
        self.chain = chain
        super().__init__(str(self))

    def __str__(self) -> str:
        if len(self.chain) == 2 and self.chain[0] == self.chain[1]:
            return (f'Tap migration for {self.chain[0]} points to itself, '
                    'stopping recursion.')
        return ('Tap migration cycle ' + ' -> '.join(self.chain)
                + ', stopping recursion.')


class CaskUnavailableError(FormulaError):
    def __init__(self, token: str) -> None:
        super().__init__(token)
        self.token = token

    def __str__(self) -> str:
        return f'Cask "{self.token}" is unavailable.'


class UnsupportedMethodError(NotImplementedError):
    ''' Definition without build recipe (API or stub) asked to build '''


class Ignorable:
    ''' Mixin for load errors which may be downgraded to a warning '''

    def ignore(self) -> None:
        Log.warn(self, summary=True)


class MethodDeprecatedError(Ignorable, Exception):
    def __init__(self, method: str, replacement: 'str|None' = None) -> None:
        self.method = method
        self.replacement = replacement
        super().__init__(str(self))

    def __str__(self) -> str:
        rv = f'Calling {self.method} is deprecated!'
        if self.replacement:
            rv += f' Use {self.replacement} instead.'
        return rv


class ScriptSyntaxError(Exception):
    def __init__(self, msg: str, lineno: int = 0) -> None:
        self.msg = msg
        self.lineno = lineno
        super().__init__(str(self))

    def __str__(self) -> str:
        return f'line {self.lineno}: {self.msg}' if self.lineno else self.msg


# -----------------------------------
#  Version
# -----------------------------------

@total_ordering
class Version:
    ''' Comparable version string, e.g. "1.10" > "1.9", "HEAD" is newest '''
    RX_FROM_URL = re.compile(
        r'[-_/]v?(\d+(?:\.\d+)*[a-z]?\d*)'
        r'(?:[-_.](?:src|source|orig))?'
        r'\.(?:tar\.(?:gz|bz2|xz|zst|lz)|tgz|tbz2?|txz|zip|gem|7z|dmg|pkg)$')

    def __init__(self, value: str) -> None:
        self.value = str(value)

    @staticmethod
    def fromUrl(url: 'str|None') -> 'Version|None':
        ''' Detect version from download url, e.g. `foo-1.2.3.tar.gz` '''
        if url and (match := Version.RX_FROM_URL.search(url)):
            return Version(match.group(1))
        return None

    @property
    def isHead(self) -> bool:
        return self.value == 'HEAD' or self.value.startswith('HEAD-')

    def _key(self) -> tuple:
        if self.isHead:
            return ((3, 0, ''),)
        return tuple((2, int(x), '') if x.isdigit() else (1, 0, x.lower())
                     for x in re.findall(r'\d+|[a-zA-Z]+', self.value))

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Version):
            return self.value == other.value
        return self.value == other

    def __lt__(self, other: 'Version') -> bool:
        return self._key() < other._key()

    def __hash__(self) -> int:
        return hash(self.value)

    def __str__(self) -> str:
        return self.value

    def __repr__(self) -> str:
        return f'<Version {self.value}>'


class PkgVersion(NamedTuple):
    version: Version
    revision: int = 0

    @staticmethod
    def parse(value: str) -> 'PkgVersion':
        ''' "1.0_1" -> (1.0, revision 1) '''
        ver, _, rev = value.rpartition('_')
        if ver and rev.isdigit():
            return PkgVersion(Version(ver), int(rev))
        return PkgVersion(Version(value), 0)

    def sortKey(self) -> tuple:
        return (self.version._key(), self.revision)

    def __str__(self) -> str:
        if self.revision:
            return f'{self.version}_{self.revision}'
        return str(self.version)


# -----------------------------------
#  Definition parts
# -----------------------------------

class Sym(str):
    ''' Ruby symbol, e.g. `:build`. Compares equal to its plain name. '''

    def __repr__(self) -> str:
        return ':' + self


class Dependency(NamedTuple):
    name: str
    tags: tuple[str, ...] = ()  # build, test, recommended, optional
    context: tuple[str, ...] = ()  # on_* blocks (e.g. "macos", "arm")

    KINDS = ('build', 'test', 'recommended', 'optional')

    @property
    def kind(self) -> str:
        ''' One of: required, build, test, recommended, optional '''
        for tag in self.tags:
            if tag in Dependency.KINDS:
                return tag
        return 'required'

    @property
    def runtime(self) -> bool:
        ''' `True` if dependency is needed after install '''
        return not (set(self.tags) & {'build', 'test', 'optional'})

    def toDict(self) -> dict[str, Any]:
        return {'name': self.name, 'kind': self.kind,
                'tags': list(self.tags), 'context': list(self.context)}

    def __str__(self) -> str:
        kind = self.kind
        return self.name if kind == 'required' else f'{self.name} ({kind})'


class Requirement(NamedTuple):
    name: str  # arch, linux, macos, maximum_macos, xcode
    version: Optional[str] = None
    tags: tuple[str, ...] = ()

    def unsatisfied(self, system: Platform) -> 'str|None':
        ''' Returns reason if current system does not fulfill requirement '''
        if self.name == 'linux':
            return None if not system.isMac else 'Linux only'
        if self.name == 'macos' and not self.version:
            return None if system.isMac else 'MacOS only'
        if self.name == 'arch':
            if self.version in ('x86_64', 'intel'):
                return 'no ARM support' if system.isArm else None
            if self.version in ('arm64', 'arm'):
                return None if system.isArm else 'ARM only'
            return None
        if self.name in ('macos', 'maximum_macos'):
            osVer = Platform.ALL_OS.get(self.version or '', self.version)
            op = '<=' if self.name == 'maximum_macos' else '>='
            if not system.isMac or not system.osVersionCmp(op, osVer or '0'):
                return f'needs macOS {op} {osVer}'
            return None
        if self.name == 'xcode':
            if not system.isMac:
                return None if 'build' in self.tags else 'needs Xcode'
            if self.version and not DevelopmentTools.hasXcodeVer(self.version):
                return f'needs Xcode >= {self.version}'
            if not self.version and not DevelopmentTools.hasXcodeVer('1'):
                return 'needs Xcode'
        return None

    def __str__(self) -> str:
        rv = self.name
        if self.version:
            rv += f' {self.version}'
        if self.tags:
            rv += ' ({})'.format(', '.join(self.tags))
        return rv


class BottleFile(NamedTuple):
    cellar: str  # "any", "any_skip_relocation" or absolute path
    sha256: str


class BottleSpec:
    def __init__(self, rootUrl: str = '', rebuild: int = 0) -> None:
        self.rootUrl = rootUrl
        self.rebuild = rebuild
        self.files = {}  # type: dict[str, BottleFile]

    def __repr__(self) -> str:
        return f'<BottleSpec {", ".join(self.files)}>'

    def add(self, tag: str, sha256: str, cellar: str = 'any') -> None:
        self.files[tag] = BottleFile(cellar, sha256)

    def tagSpec(self, tag: str) -> 'BottleFile|None':
        ''' Checksum for platform tag. Falls back to "all". '''
        return self.files.get(tag) or self.files.get('all')

    def url(self, name: str, tag: str) -> 'str|None':
        if spec := self.tagSpec(tag):
            pkg = name.replace('@', '/')
            return f'{self.rootUrl}/{pkg}/blobs/sha256:{spec.sha256}'
        return None


class SoftwareSpec:
    ''' Download url, version and dependencies for `stable` or `head` '''

    def __init__(self, name: str) -> None:
        self.name = name  # stable | head
        self.url = None  # type: str|None
        self.urlSpecs = {}  # type: dict[str, str]  # tag, revision, branch
        self.mirrors = []  # type: list[str]
        self.checksum = None  # type: str|None
        self._version = None  # type: Version|None
        self.dependencies = []  # type: list[Dependency]
        self.requirements = []  # type: list[Requirement]
        self.usesFromMacos = []  # type: list[Dependency]
        self.usesFromMacosBounds = {}  # type: dict[str, str]
        self.bottle = None  # type: BottleSpec|None

    def __repr__(self) -> str:
        return f'<SoftwareSpec {self.name} {self.version}>'

    @property
    def version(self) -> 'Version|None':
        if self.name == 'head':
            return Version('HEAD')
        return self._version or Version.fromUrl(self.url)

    @version.setter
    def version(self, value: 'str|None') -> None:
        self._version = Version(value) if value else None

    def dependsOn(self, dep: Dependency) -> None:
        if dep.name not in (x.name for x in self.dependencies):
            self.dependencies.append(dep)

    def addUsesFromMacos(
        self, dep: Dependency, since: 'str|None', system: Platform,
    ) -> None:
        ''' Dependency only on linux or if macOS is older than `since` '''
        self.usesFromMacos.append(dep)
        if since:
            self.usesFromMacosBounds[dep.name] = since
        if not system.isMac or (since and not system.osVersionCmp(
                '>=', Platform.ALL_OS.get(since, since))):
            self.dependsOn(dep)


class Service(NamedTuple):
    run: list[str]
    name: Optional[str] = None
    options: Optional[dict[str, Any]] = None

    @property
    def command(self) -> list[str]:
        return self.run


class Deprecation(NamedTuple):
    date: Optional[str]
    reason: Optional[str]
    symbolic: bool = False  # reason is one of `REASONS`
    replacement: Optional[str] = None

    REASONS = {
        'does_not_build': 'does not build',
        'no_license': 'has no license',
        'repo_archived': 'has an archived upstream repository',
        'repo_removed': 'has a removed upstream repository',
        'unmaintained': 'is not maintained upstream',
        'unsupported': 'is not supported upstream',
        'deprecated_upstream': 'is deprecated upstream',
        'versioned_formula': 'is a versioned formula',
        'checksum_mismatch': 'was built with an initially released source '
                             'file that had a different checksum than the '
                             'current one',
    }

    @staticmethod
    def fromReason(
        when: 'str|None', because: 'str|None',
        replacement: 'str|None' = None,
    ) -> 'Deprecation':
        ''' Reason codes are either ":symbol" or free text '''
        if because and because.startswith(':'):
            return Deprecation(when, because[1:], True, replacement)
        symbolic = isinstance(because, Sym) or because in Deprecation.REASONS
        return Deprecation(when, because, symbolic, replacement)

    def active(self, today: 'date|None' = None) -> bool:
        ''' Deprecation without date or with date in the past '''
        if not self.date:
            return True
        try:
            return date.fromisoformat(self.date) <= (today or date.today())
        except ValueError:
            return True

    @property
    def message(self) -> str:
        if not self.reason:
            return 'deprecated'
        text = Deprecation.REASONS.get(self.reason, self.reason) \
            if self.symbolic else self.reason
        return 'deprecated because it ' + text


class KegOnly(NamedTuple):
    reason: str
    explanation: str = ''

    REASONS = {
        'provided_by_macos': 'macOS already provides this software',
        'shadowed_by_macos': 'macOS provides similar software',
        'versioned_formula': 'this is an alternate version of another formula',
    }

    @property
    def message(self) -> str:
        text = KegOnly.REASONS.get(self.reason, self.reason)
        return f'{text}\n{self.explanation}' if self.explanation else text


class Conflict(NamedTuple):
    name: str
    because: Optional[str] = None


class Option(NamedTuple):
    name: str
    description: str = ''


class FormulaStub(NamedTuple):
    ''' Only enough metadata to fetch a bottle '''
    name: str
    pkgVersion: PkgVersion
    rebuild: int = 0
    sha256: Optional[str] = None

    @property
    def version(self) -> Version:
        return self.pkgVersion.version

    @property
    def revision(self) -> int:
        return self.pkgVersion.revision


# -----------------------------------
#  Recipe
# -----------------------------------

class Recipe:
    '''
    Materialized blueprint of one formula construct. Shared by every
    `Formula` instance loaded from the same source (path, content or JSON).
    '''

    def __init__(self, className: str, source: str = 'path') -> None:
        self.className = className
        self.source = source  # path | contents | api | stub
        self.specs = {
            'stable': SoftwareSpec('stable'),
            'head': SoftwareSpec('head'),
        }
        self.desc = None  # type: str|None
        self.homepage = None  # type: str|None
        self.license = None  # type: Any
        self.revision = 0
        self.versionScheme = 0
        self.service = None  # type: Service|None
        self.caveats = None  # type: str|None
        self.deprecation = None  # type: Deprecation|None
        self.disable = None  # type: Deprecation|None
        self.conflicts = []  # type: list[Conflict]
        self.linkOverwrite = []  # type: list[str]
        self.options = []  # type: list[Option]
        self.kegOnly = None  # type: KegOnly|None
        self.pourBottleOnlyIf = None  # type: str|None
        self.aliases = []  # type: list[str]
        self.oldnames = []  # type: list[str]
        self.versionedFormulae = []  # type: list[str]
        self.tapGitHead = None  # type: str|None
        self.rubySourcePath = None  # type: str|None
        self.rubySourceChecksum = None  # type: str|None
        self.postInstallDefined = False
        self.installSteps = []  # type: list[str]
        self.apiSource = None  # type: dict[str, Any]|None
        self.flags = []  # type: list[str]

    def __repr__(self) -> str:
        return f'<Recipe {self.className} ({self.source})>'

    @property
    def stable(self) -> 'SoftwareSpec|None':
        spec = self.specs['stable']
        return spec if spec.url else None

    @property
    def head(self) -> 'SoftwareSpec|None':
        spec = self.specs['head']
        return spec if spec.url else None

    @property
    def loadedFromApi(self) -> bool:
        return self.source in ('api', 'stub')

    @property
    def loadedFromStub(self) -> bool:
        return self.source == 'stub'


class Namespace(NamedTuple):
    ''' Constructs defined by one evaluation (keyed by platform + source) '''
    key: str
    classes: dict[str, Optional[Recipe]]  # non-formula classes map to None

    def classList(self) -> list[str]:
        return sorted(self.classes)


# -----------------------------------
#  ScriptLexer
# -----------------------------------

class Interp(NamedTuple):
    ''' `#{...}` expression inside a double-quoted string '''
    expr: str
    lineno: int


class Token(NamedTuple):
    kind: str  # str, sym, num, ident, call, label, op, words, regex, nl
    value: Any
    lineno: int

    def isOp(self, *ops: str) -> bool:
        return self.kind == 'op' and self.value in ops

    def isIdent(self, *names: str) -> bool:
        return self.kind == 'ident' and self.value in names


class Stmt:
    ''' One logical line, optionally with a nested block (`do`/`def`/...) '''

    def __init__(
        self, tokens: list[Token], body: 'list[Stmt]|None' = None,
        blockArgs: 'list[str]|None' = None,
    ) -> None:
        self.tokens = tokens
        self.lineno = tokens[0].lineno
        self.body = body
        self.blockArgs = blockArgs or []
        self.endLineno = self.lineno

    def __repr__(self) -> str:
        return f'<Stmt {self.lineno} {self.keyword}>'

    @property
    def keyword(self) -> str:
        first = self.tokens[0]
        return first.value if first.kind == 'ident' else ''


class ScriptLexer:
    ''' Tokenize a Ruby-subset formula script (no code is executed) '''
    RX_IDENT = re.compile(
        r'[@$]{0,2}[A-Za-z_]\w*[?!]?(?:(?:\.|::)[A-Za-z_]\w*[?!]?)*')
    RX_CALL = re.compile(r'\.[A-Za-z_]\w*[?!]?')
    RX_NUM = re.compile(r'\d[\d_]*(?:\.\d+)?')
    RX_SYM = re.compile(r':([A-Za-z_]\w*[?!=]?)')
    RX_HEREDOC = re.compile(r'<<([~-]?)([\'"]?)([A-Z_][A-Z0-9_]*)\2')
    RX_PERCENT = re.compile(r'%([wWiIqQr]?)([\[({<|!/])')
    RX_ESCAPE = re.compile(r'\\(.)', re.DOTALL)
    ESCAPES = {'n': '\n', 't': '\t', 'e': '\x1b', 's': ' ', '0': '\0'}
    OPS = ('<=>', '...', '||=', '&&=', '**', '=>', '==', '!=', '>=', '<=',
           '&&', '||', '::', '+=', '-=', '<<', '=~', '!~', '..', '->')
    PAIRS = {'(': ')', '[': ']', '{': '}', '<': '>'}
    # a line ending with one of these continues on the next line
    CONTINUE = (',', '=>', '&&', '||', '+', '=', '+=', '-=', '||=', '.',
                '==', '!=', '>=', '<=', '<', '>', '!', '?', ':')
    # a slash after one of these starts a regex literal
    REGEX_AFTER = (',', '(', '[', '{', '=', '=~', '!~', '&&', '||', '!',
                   '=>', '==', '!=')
    BLOCK_KEYWORDS = ('class', 'module', 'def', 'if', 'unless', 'case',
                      'while', 'until', 'begin', 'for')

    def __init__(self, source: str) -> None:
        self.src = source
        self.pos = 0
        self.lineno = 1
        self.tokens = []  # type: list[Token]
        self._depth = 0
        self._heredocs = []  # type: list[tuple[list, str, str, bool, int]]

    def _add(self, kind: str, value: Any, lineno: 'int|None' = None) -> None:
        self.tokens.append(Token(kind, value, lineno or self.lineno))

    def _atLineStart(self) -> bool:
        return self.pos == 0 or self.src[self.pos - 1] == '\n'

    def tokenize(self) -> list[Token]:
        src = self.src
        while self.pos < len(src):
            c = src[self.pos]
            if c == '\n':
                self._newline()
            elif c in ' \t\r':
                self.pos += 1
            elif c == '\\' and src.startswith('\\\n', self.pos):
                self.pos += 2
                self.lineno += 1
            elif c == '#':
                self._skipLine()
            elif self._atLineStart() and src.startswith('=begin', self.pos):
                end = src.find('\n=end', self.pos)
                if end < 0:
                    raise ScriptSyntaxError(
                        'embedded document meets end of file', self.lineno)
                self.lineno += src.count('\n', self.pos, end + 1)
                self.pos = end + 1
                self._skipLine()
            elif self._atLineStart() and \
                    src[self.pos:].split('\n', 1)[0].rstrip() == '__END__':
                break  # DATA section
            elif c in '"\'`':
                lineno = self.lineno
                self._add('str', self._string(c), lineno)
            elif c == ';':
                self.pos += 1
                self._endStatement()
            elif c == '<' and (match := self.RX_HEREDOC.match(src, self.pos)):
                mode, quote, ident = match.groups()
                parts = []  # type: list  # filled at end of line
                self._heredocs.append(
                    (parts, ident, mode, quote == "'", self.lineno))
                self._add('str', parts)
                self.pos = match.end()
            elif c == '%' and (match := self.RX_PERCENT.match(src, self.pos)) \
                    and (match.group(1) or not self._prevIsValue()):
                self._percentLiteral(*match.groups())
            elif c == ':' and (match := self.RX_SYM.match(src, self.pos)):
                self._add('sym', match.group(1))
                self.pos = match.end()
            elif c == ':' and src.startswith(':"', self.pos):
                self.pos += 1
                self._add('sym', ''.join(str(x) for x in self._string('"')))
            elif c == '.' and self._afterValue() and \
                    (match := self.RX_CALL.match(src, self.pos)):
                self._add('call', match.group(0)[1:])
                self.pos = match.end()
            elif c.isdigit():
                match = self.RX_NUM.match(src, self.pos)
                assert match
                raw = match.group(0).replace('_', '')
                self._add('num', float(raw) if '.' in raw else int(raw))
                self.pos = match.end()
            elif c.isalpha() or c in '_@$':
                self._identifier()
            elif c == '/' and self._regexAllowed():
                self._regex()
            else:
                self._operator()
        self._endStatement()
        if self._heredocs:
            _, ident, _, _, lineno = self._heredocs[0]
            raise ScriptSyntaxError(
                f'can\'t find string "{ident}" anywhere before EOF', lineno)
        if self._depth > 0:
            raise ScriptSyntaxError('unexpected end-of-input, unbalanced '
                                    'brackets', self.lineno)
        return self.tokens

    def statements(self) -> list[Stmt]:
        ''' Group tokens into a tree of statements with nested blocks '''
        lines = []  # type: list[list[Token]]
        current = []  # type: list[Token]
        for tok in self.tokenize():
            if tok.kind == 'nl':
                if current:
                    lines.append(current)
                current = []
            else:
                current.append(tok)
        if current:
            lines.append(current)

        root = []  # type: list[Stmt]
        stack = []  # type: list[Stmt]
        for toks in lines:
            first = toks[0]
            if first.kind == 'ident' and (
                    first.value == 'end' or first.value.startswith('end.')):
                if not stack:
                    raise ScriptSyntaxError("unexpected 'end'", first.lineno)
                stack.pop().endLineno = first.lineno
                continue
            stmt = self._blockStatement(toks)
            (stack[-1].body if stack else root).append(stmt)  # type: ignore
            if stmt.body is not None:
                stack.append(stmt)
        if stack:
            raise ScriptSyntaxError(
                "unexpected end-of-input, missing 'end' for block opened "
                f'on line {stack[-1].lineno}', self.lineno)
        return root

    ##################################################
    # Helper methods
    ##################################################

    def _blockStatement(self, toks: list[Token]) -> Stmt:
        first = toks[0]
        if first.isIdent(*self.BLOCK_KEYWORDS):
            if first.value == 'def' and any(x.isOp('=') for x in toks[2:3]):
                return Stmt(toks)  # endless method
            if len(toks) > 1 and toks[-1].isIdent('end'):
                return Stmt(toks)  # single-line, e.g. `if x then y end`
            return Stmt(toks, [])
        # trailing "do" or "do |a, b|"
        depth = 0
        for idx, tok in enumerate(toks):
            if tok.isOp('(', '[', '{'):
                depth += 1
            elif tok.isOp(')', ']', '}'):
                depth -= 1
            elif depth == 0 and tok.isIdent('do') and idx > 0:
                rest = toks[idx + 1:]
                if not rest:
                    return Stmt(toks[:idx], [])
                if len(rest) >= 2 and rest[0].isOp('|') and rest[-1].isOp('|'):
                    names = [x.value for x in rest[1:-1] if x.kind == 'ident']
                    return Stmt(toks[:idx], [], names)
        return Stmt(toks)

    def _skipLine(self) -> None:
        end = self.src.find('\n', self.pos)
        self.pos = len(self.src) if end < 0 else end

    def _endStatement(self) -> None:
        if self._depth == 0 and self.tokens and self.tokens[-1].kind != 'nl':
            self._add('nl', None)

    def _newline(self) -> None:
        self.pos += 1
        lineno = self.lineno
        self.lineno += 1
        for parts, ident, mode, raw, start in self._heredocs:
            parts.extend(self._heredocBody(ident, mode, raw, start))
        self._heredocs.clear()
        if not self.tokens:
            return
        last = self.tokens[-1]
        if last.kind == 'op' and last.value in self.CONTINUE:
            return
        if self._depth == 0 and last.kind != 'nl':
            self._add('nl', None, lineno)

    def _prevIsValue(self) -> bool:
        if not self.tokens:
            return False
        last = self.tokens[-1]
        return last.kind in ('str', 'ident', 'num', 'sym', 'call', 'words') \
            or last.isOp(')', ']', '}')

    def _afterValue(self) -> bool:
        ''' Method call directly attached to previous value, e.g. `"x".y` '''
        if self.pos == 0 or self.src[self.pos - 1] in ' \t':
            return False
        return self._prevIsValue()

    def _regexAllowed(self) -> bool:
        if not self.tokens or self.tokens[-1].kind == 'nl':
            return True
        last = self.tokens[-1]
        if last.kind == 'op':
            return last.value in self.REGEX_AFTER
        if last.kind == 'ident':
            # `inreplace /x/` but not `a / b` or `prefix/"x"`
            before = self.src[self.pos - 1]
            after = self.src[self.pos + 1:self.pos + 2]
            return before in ' \t' and after not in (' ', '\t', '')
        return False

    def _identifier(self) -> None:
        match = self.RX_IDENT.match(self.src, self.pos)
        if not match:
            self._operator()
            return
        value = match.group(0)
        self.pos = match.end()
        if self.src.startswith(':', self.pos) and \
                not self.src.startswith('::', self.pos) and \
                '.' not in value and '::' not in value and \
                value[-1] not in '?!':
            self.pos += 1
            self._add('label', value)
        else:
            self._add('ident', value)

    def _operator(self) -> None:
        for op in self.OPS:
            if self.src.startswith(op, self.pos):
                break
        else:
            op = self.src[self.pos]
        self.pos += len(op)
        if op in '([{':
            self._depth += 1
        elif op in ')]}':
            self._depth = max(0, self._depth - 1)
        self._add('op', op)

    def _string(self, quote: str) -> list:
        ''' Read quoted string at `self.pos`. Returns list of parts. '''
        src = self.src
        start = self.lineno
        i = self.pos + 1
        buf = []  # type: list[str]
        while True:
            if i >= len(src):
                raise ScriptSyntaxError(
                    'unterminated string meets end of file', start)
            c = src[i]
            if c == '\\' and i + 1 < len(src):
                buf.append(src[i:i + 2])
                if src[i + 1] == '\n':
                    self.lineno += 1
                i += 2
                continue
            if c == quote:
                break
            if c == '#' and quote != "'" and src.startswith('#{', i):
                end = self._skipInterpolation(i + 2, start)
                buf.append(src[i:end])
                i = end
                continue
            if c == '\n':
                self.lineno += 1
            buf.append(c)
            i += 1
        self.pos = i + 1
        text = ''.join(buf)
        if quote == "'":
            return [text.replace("\\'", "'").replace('\\\\', '\\')]
        return self._interpolation(text, start)

    def _skipInterpolation(self, i: int, start: int) -> int:
        ''' Returns index after the `}` closing an interpolation '''
        depth = 1
        inString = False
        while i < len(self.src):
            c = self.src[i]
            if c == '"':
                inString = not inString
            elif not inString and c == '{':
                depth += 1
            elif not inString and c == '}':
                depth -= 1
                if depth == 0:
                    return i + 1
            i += 1
        raise ScriptSyntaxError('unterminated string meets end of file', start)

    def _interpolation(self, text: str, lineno: int) -> list:
        ''' Split `text` into literal strings and `Interp` expressions '''
        parts = []  # type: list
        i = 0
        while (idx := text.find('#{', i)) >= 0:
            if idx > 0 and text[idx - 1] == '\\':  # escaped "\#{"
                parts.append(self._unescape(text[i:idx - 1]) + '#{')
                i = idx + 2
                continue
            depth = 0
            for end in range(idx + 2, len(text)):
                if text[end] == '{':
                    depth += 1
                elif text[end] == '}':
                    if depth == 0:
                        break
                    depth -= 1
            else:
                raise ScriptSyntaxError('unterminated interpolation', lineno)
            if idx > i:
                parts.append(self._unescape(text[i:idx]))
            parts.append(Interp(text[idx + 2:end], lineno))
            i = end + 1
        if i < len(text) or not parts:
            parts.append(self._unescape(text[i:]))
        return parts

    def _unescape(self, text: str) -> str:
        return self.RX_ESCAPE.sub(
            lambda m: self.ESCAPES.get(m.group(1), m.group(1)), text)

    def _heredocBody(
        self, ident: str, mode: str, raw: bool, start: int,
    ) -> list:
        lines = []  # type: list[str]
        while True:
            if self.pos >= len(self.src):
                raise ScriptSyntaxError(
                    f'can\'t find string "{ident}" anywhere before EOF', start)
            end = self.src.find('\n', self.pos)
            if end < 0:
                end = len(self.src)
            line = self.src[self.pos:end]
            self.pos = min(end + 1, len(self.src))
            self.lineno += 1
            if (line.strip() if mode else line) == ident:
                break
            lines.append(line)
        if mode == '~':
            indent = min((len(x) - len(x.lstrip()) for x in lines
                          if x.strip()), default=0)
            lines = [x[indent:] for x in lines]
        text = ''.join(x + '\n' for x in lines)
        return [text] if raw else self._interpolation(text, start + 1)

    def _percentLiteral(self, kind: str, opening: str) -> None:
        closing = self.PAIRS.get(opening, opening)
        start = self.pos + len(kind) + 2
        depth = 0
        i = start
        while i < len(self.src):
            c = self.src[i]
            if c == '\\':
                i += 2
                continue
            if c == opening and closing != opening:
                depth += 1
            elif c == closing:
                if depth == 0:
                    break
                depth -= 1
            i += 1
        else:
            raise ScriptSyntaxError(
                'unterminated list meets end of file', self.lineno)
        text = self.src[start:i]
        lineno = self.lineno
        self.lineno += text.count('\n')
        self.pos = i + 1
        if kind in 'wW' and kind:
            self._add('words', text.split(), lineno)
        elif kind in 'iI' and kind:
            self._add('words', [Sym(x) for x in text.split()], lineno)
        elif kind == 'r':
            self._add('regex', text, lineno)
        else:
            self._add('str', self._interpolation(text, lineno), lineno)

    def _regex(self) -> None:
        i = self.pos + 1
        while i < len(self.src) and self.src[i] not in '/\n':
            i += 2 if self.src[i] == '\\' else 1
        if i >= len(self.src) or self.src[i] != '/':
            raise ScriptSyntaxError('unterminated regexp', self.lineno)
        self._add('regex', self.src[self.pos + 1:i])
        self.pos = i + 1
        while self.pos < len(self.src) and self.src[self.pos] in 'imxo':
            self.pos += 1


# -----------------------------------
#  ScriptParser
# -----------------------------------

class Args(NamedTuple):
    pos: list
    kw: dict[str, Any]
    pairs: list[tuple[Any, Any]]  # "x" => :build

    def first(self, default: Any = None) -> Any:
        return self.pos[0] if self.pos else default


class Const(str):
    ''' Unresolved constant, e.g. `GitHubPrivateRepositoryDownloadStrategy` '''


class FormulaRef(str):
    ''' `Formula["name"]` inside a script '''


class ScriptParser:
    '''
    Replay the statements of a formula script onto `Recipe` objects.
    Only a fixed set of DSL calls is understood. Nothing is executed, the
    only side effect is `puts` / `print` output.
    '''
    DEPRECATED = {
        'sha1': 'sha256',
        'devel': 'head',
        'plist_options': 'service',
        'go_resource': 'resource',
    }
    SKIPPED = set([
        'livecheck', 'test', 'resource', 'patch', 'fails_with', 'skip_clean',
        'cxxstdlib_check', 'env', 'needs', 'no_autobump!',
        'compatibility_version', 'deprecated_option', 'include', 'extend',
        'require', 'require_relative', 'attr_reader', 'attr_accessor',
        'class', 'module', 'allow_network_access!', 'deny_network_access!',
    ])
    KEG_DIRS = {
        'prefix': '',
        'bin': 'bin',
        'sbin': 'sbin',
        'lib': 'lib',
        'include': 'include',
        'share': 'share',
        'libexec': 'libexec',
        'frameworks': 'Frameworks',
        'man': 'share/man',
        'info': 'share/info',
        'doc': 'share/doc',
    }
    ARG_CALLS = ('build.with?', 'build.without?')
    OPTIONAL_ARG_CALLS = ('DevelopmentTools.gcc_version',)
    CMP_OPS = ('==', '!=', '>=', '<=', '<', '>')

    def __init__(
        self, name: str, path: str, *,
        system: Platform,
        paths: Paths,
        flags: 'list[str]|None' = None,
        installed: 'Callable[[str], bool]|None' = None,
        ignoreErrors: bool = False,
        bottleDomain: str = Config().BOTTLE_DOMAIN,
    ) -> None:
        self.name = name
        self.path = path
        self.system = system
        self.paths = paths
        self.flags = flags or []
        self.installed = installed or (lambda _: False)
        self.ignoreErrors = ignoreErrors
        self.bottleDomain = bottleDomain
        self.warnings = []  # type: list[MethodDeprecatedError]
        self.notes = []  # type: list[str]  # unsupported conditions
        self._recipe = Recipe('')
        self._service = {}  # type: dict[str, Any]
        self._locals = {}  # type: dict[str, Any]
        self._lines = []  # type: list[str]

    def parse(self, contents: str) -> dict[str, 'Recipe|None']:
        ''' Returns all top-level classes (non-formula classes are `None`) '''
        self._lines = contents.splitlines()
        classes = {}  # type: dict[str, Recipe|None]
        for stmt in ScriptLexer(contents).statements():
            kw = stmt.keyword
            if kw == 'class':
                name, base = self._classDecl(stmt)
                if not name:
                    continue
                if base == 'Formula':
                    self._recipe = Recipe(name)
                    self._recipe.flags = list(self.flags)
                    self._run(stmt.body or [], 'formula')
                    classes[name] = self._recipe
                else:
                    classes[name] = None
            elif kw in ('puts', 'print'):
                self._puts(kw, stmt.tokens, stmt.lineno)
            elif kw in ('module', 'def', 'require', 'require_relative') \
                    or self._isAssignment(stmt.tokens):
                continue
            else:
                raise ScriptSyntaxError("undefined method '{}' for main".format(
                    kw or stmt.tokens[0].value), stmt.lineno)
        return classes

    ##################################################
    # Statements
    ##################################################

    def _classDecl(self, stmt: Stmt) -> tuple[str, 'str|None']:
        toks = stmt.tokens
        if len(toks) < 2 or toks[1].kind != 'ident':
            return '', None  # class << self
        name = toks[1].value.split('::')[-1]
        if len(toks) >= 4 and toks[2].isOp('<') and toks[3].kind == 'ident':
            return name, toks[3].value.split('::')[-1]
        return name, None

    def _run(
        self, body: list[Stmt], scope: str, context: tuple[str, ...] = (),
    ) -> None:
        for stmt in body:
            try:
                self._statement(stmt, scope, context)
            except MethodDeprecatedError as e:
                if not self.ignoreErrors:
                    raise
                self.warnings.append(e)

    def _statement(
        self, stmt: Stmt, scope: str, context: tuple[str, ...],
    ) -> None:
        kw = stmt.keyword
        if not kw:
            raise ScriptSyntaxError(
                f'unexpected {stmt.tokens[0].value!r}', stmt.lineno)
        if kw in ('if', 'unless') and stmt.body is not None:
            self._ifBlock(stmt, lambda x: self._run(x, scope, context))
            return
        if kw in self.DEPRECATED:
            raise MethodDeprecatedError(kw, self.DEPRECATED[kw])
        if kw in self.SKIPPED or self._isAssignment(stmt.tokens):
            return
        if kw == 'def':
            if scope == 'formula':
                self._def(stmt)
            return

        toks, cond = self._modifier(stmt.tokens)
        if cond is False:
            return
        if kw.startswith('on_'):
            args = self._args(toks[1:], stmt.lineno)
            if stmt.body and self._onBlock(kw[3:], args, stmt.lineno):
                self._run(stmt.body, scope, context + (kw[3:],))
            return
        if kw in ('puts', 'print'):
            self._puts(kw, toks, stmt.lineno)
            return

        args = self._args(toks[1:], stmt.lineno)
        if scope == 'formula':
            handled = self._formulaStatement(stmt, kw, args, context)
        elif scope in ('stable', 'head'):
            handled = self._specStatement(
                stmt, kw, args, [self._recipe.specs[scope]], context)
        elif scope == 'bottle':
            handled = self._bottleStatement(kw, args)
        elif scope == 'service':
            handled = self._serviceStatement(kw, args)
        else:
            handled = False
        if not handled:
            raise ScriptSyntaxError(
                f"undefined method '{kw}' in {scope} block", stmt.lineno)

    def _formulaStatement(
        self, stmt: Stmt, kw: str, args: Args, context: tuple[str, ...],
    ) -> bool:
        recipe = self._recipe
        if kw == 'desc':
            recipe.desc = self._text(args, stmt)
        elif kw == 'homepage':
            recipe.homepage = self._text(args, stmt)
        elif kw == 'license':
            recipe.license = self._plain(args.first() if args.pos else args.kw)
        elif kw == 'revision':
            recipe.revision = int(args.first(0))
        elif kw == 'version_scheme':
            recipe.versionScheme = int(args.first(0))
        elif kw in ('stable', 'head') and stmt.body is not None:
            self._run(stmt.body, kw, context)
        elif kw == 'head':
            spec = recipe.specs['head']
            spec.url = self._text(args, stmt)
            spec.urlSpecs = {k: str(v) for k, v in args.kw.items()}
        elif kw == 'bottle':
            if stmt.body is None:
                raise MethodDeprecatedError(f'bottle :{args.first()}')
            stable = recipe.specs['stable']
            stable.bottle = stable.bottle or BottleSpec(self.bottleDomain)
            self._run(stmt.body, 'bottle', context)
        elif kw == 'service':
            self._service = {'run': [], 'name': None, 'options': {}}
            self._run(stmt.body or [], 'service', context)
            recipe.service = Service(**self._service)
        elif kw == 'keg_only':
            reason = args.first()
            if reason is None:
                raise ScriptSyntaxError('keg_only needs a reason', stmt.lineno)
            expl = str(args.pos[1]) if len(args.pos) > 1 else ''
            recipe.kegOnly = KegOnly(str(reason), expl)
        elif kw in ('deprecate!', 'disable!'):
            value = Deprecation.fromReason(
                self._plain(args.kw.get('date')), args.kw.get('because'),
                args.kw.get('replacement_formula') or args.kw.get(
                    'replacement_cask') or args.kw.get('replacement'))
            if kw == 'deprecate!':
                recipe.deprecation = value
            else:
                recipe.disable = value
        elif kw == 'conflicts_with':
            because = args.kw.get('because')
            for name in args.pos:
                recipe.conflicts.append(Conflict(str(name), because))
        elif kw == 'link_overwrite':
            recipe.linkOverwrite.extend(str(x) for x in args.pos)
        elif kw == 'option':
            name = self._text(args, stmt)
            desc = str(args.pos[1]) if len(args.pos) > 1 else ''
            recipe.options.append(Option(name, desc))
        elif kw == 'pour_bottle?':
            if 'only_if' in args.kw:
                recipe.pourBottleOnlyIf = str(args.kw['only_if'])
        else:
            specs = [recipe.specs['stable'], recipe.specs['head']]
            return self._specStatement(stmt, kw, args, specs, context)
        return True

    def _specStatement(
        self, stmt: Stmt, kw: str, args: Args, specs: list[SoftwareSpec],
        context: tuple[str, ...],
    ) -> bool:
        ''' `specs[0]` receives url & version, all specs get dependencies '''
        main = specs[0]
        if kw == 'url':
            main.url = self._text(args, stmt)
            main.urlSpecs = {k: str(v) for k, v in args.kw.items()}
        elif kw == 'mirror':
            main.mirrors.append(self._text(args, stmt))
        elif kw == 'sha256':
            main.checksum = self._text(args, stmt)
        elif kw == 'version':
            main.version = self._text(args, stmt)
        elif kw == 'depends_on':
            value = self._dependsOn(args, context, stmt)
            for spec in specs:
                if isinstance(value, Requirement):
                    spec.requirements.append(value)
                else:
                    spec.dependsOn(value)
        elif kw == 'uses_from_macos':
            if args.pairs:
                name, tags = args.pairs[0]
            else:
                name, tags = self._text(args, stmt), ()
            since = args.kw.get('since')
            dep = Dependency(str(name), self._tags(tags), context)
            for spec in specs:
                spec.addUsesFromMacos(
                    dep, str(since) if since else None, self.system)
        else:
            return False
        return True

    def _bottleStatement(self, kw: str, args: Args) -> bool:
        bottle = self._recipe.specs['stable'].bottle
        assert bottle
        if kw == 'root_url':
            bottle.rootUrl = str(args.first(''))
        elif kw == 'rebuild':
            bottle.rebuild = int(args.first(0))
        elif kw == 'sha256':
            files = dict(args.kw)
            cellar = str(files.pop('cellar', self.paths.cellar))
            for tag, checksum in files.items():
                bottle.add(tag, str(checksum), cellar)
            for checksum, tag in args.pairs:  # "abc" => :sierra
                bottle.add(str(tag), str(checksum), cellar)
        elif kw in ('cellar', 'prefix'):
            pass  # superseded by per-file cellar
        else:
            return False
        return True

    def _serviceStatement(self, kw: str, args: Args) -> bool:
        if kw == 'run':
            value = args.first() if args.pos else args.kw
            if isinstance(value, dict):
                value = value.get(self.system.os)
            if value is not None:
                self._service['run'] = [str(x) for x in (
                    value if isinstance(value, list) else [value])]
        elif kw == 'name':
            value = args.first() if args.pos else args.kw.get(self.system.os)
            self._service['name'] = None if value is None else str(value)
        else:
            self._service['options'][kw] = self._plain(
                args.first() if args.pos else (args.kw or True))
        return True

    def _def(self, stmt: Stmt) -> None:
        toks = stmt.tokens
        name = toks[1].value if len(toks) > 1 else ''
        if name == 'install':
            self._recipe.installSteps = [
                x.strip() for x in self._lines[stmt.lineno:stmt.endLineno - 1]
                if x.strip()] if stmt.body is not None else []
        elif name == 'post_install':
            self._recipe.postInstallDefined = True
        elif name == 'caveats':
            self._locals = {}
            try:
                value = self._evalBody(stmt.body or [])
            except ScriptSyntaxError as e:
                self.notes.append(f'caveats not evaluated: {e}')
                value = None
            self._recipe.caveats = None if value is None else str(value)

    def _dependsOn(
        self, args: Args, context: tuple[str, ...], stmt: Stmt,
    ) -> 'Dependency|Requirement':
        if args.pairs:
            name, tags = args.pairs[0]
            if isinstance(name, Sym):  # depends_on :xcode => :build
                return Requirement(str(name), None, self._tags(tags))
            return Dependency(str(name), self._tags(tags), context)
        if args.pos:
            value = args.first()
            if isinstance(value, (Sym, Const)):
                return Requirement(str(value))
            return Dependency(str(value), (), context)
        if args.kw:
            kind, value = next(iter(args.kw.items()))
            version = None
            tags = []
            for x in (value if isinstance(value, list) else [value]):
                if isinstance(x, Sym) and x in Dependency.KINDS:
                    tags.append(str(x))
                elif version is None:
                    version = str(x)
            return Requirement(kind, version, tuple(tags))
        raise ScriptSyntaxError(
            'wrong number of arguments (given 0, expected 1)', stmt.lineno)

    def _onBlock(self, block: str, args: Args, lineno: int) -> bool:
        ''' Returns `True` if on_BLOCK matches current system '''
        system = self.system
        pos = [str(x) for x in args.pos]
        if block in ('macos', 'linux', 'arm', 'intel') and not args.pos:
            return {
                'macos': system.isMac,
                'linux': not system.isMac,
                'arm': system.isArm,
                'intel': not system.isArm,
            }[block]
        if block == 'arch' and len(pos) == 1:
            if pos[0] in ('arm', 'arm64'):
                return system.isArm
            if pos[0] in ('intel', 'x86_64'):
                return not system.isArm
        elif block == 'system' and (pos or args.kw):
            for x in pos:
                if x in ('linux', 'macos') and (x == 'macos') == system.isMac:
                    return True
            if bound := args.kw.get('macos'):
                return self._macosBound(str(bound), lineno)
            return False
        elif block in Platform.ALL_OS and len(pos) <= 1:
            suffix = ('_' + pos[0]) if pos else ''
            return self._macosBound(block + suffix, lineno)
        raise ScriptSyntaxError(
            f"undefined method 'on_{block}' for {pos or args.kw}", lineno)

    def _macosBound(self, value: str, lineno: int) -> bool:
        ''' Evaluate e.g. "sonoma", "sonoma_or_older", "sonoma_or_newer" '''
        op = '=='
        if value.endswith('_or_older'):
            value, op = value[:-9], '<='
        elif value.endswith('_or_newer'):
            value, op = value[:-9], '>='
        if value not in Platform.ALL_OS:
            raise ScriptSyntaxError(f'unknown macOS version :{value}', lineno)
        if not self.system.isMac:
            return False
        return self.system.osVersionCmp(op, Platform.ALL_OS[value])

    def _ifBlock(self, stmt: Stmt, runner: Callable[[list[Stmt]], Any]) -> Any:
        negate = stmt.keyword == 'unless'
        current = []  # type: list[Stmt]
        branches = [(stmt.tokens[1:], negate, current)]
        for sub in stmt.body or []:
            if sub.keyword == 'elsif':
                current = []
                branches.append((sub.tokens[1:], False, current))
            elif sub.keyword == 'else':
                current = []
                branches.append(([], False, current))
            else:
                current.append(sub)
        for idx, (cond, neg, body) in enumerate(branches):
            if (idx > 0 and not cond) or \
                    self._condition(cond, stmt.lineno) != neg:
                return runner(body)
        return None

    def _evalBody(self, body: list[Stmt]) -> Any:
        ''' Evaluate method body (e.g. caveats). Returns last value. '''
        value = None
        for stmt in body:
            kw = stmt.keyword
            if kw in ('if', 'unless') and stmt.body is not None:
                value = self._ifBlock(stmt, self._evalBody)
                continue
            toks, cond = self._modifier(stmt.tokens)
            if cond is False:
                continue
            if kw == 'return':
                return self._expr(toks[1:], stmt.lineno) if toks[1:] else None
            if len(toks) > 2 and toks[0].kind == 'ident' and \
                    toks[1].isOp('=', '+=', '||=', '<<'):
                name, op = toks[0].value, toks[1].value
                rhs = self._expr(toks[2:], stmt.lineno)
                if op in ('+=', '<<'):
                    rhs = self._concat(self._locals.get(name, ''), rhs)
                elif op == '||=':
                    rhs = self._locals.get(name) or rhs
                self._locals[name] = value = rhs
            else:
                value = self._expr(toks, stmt.lineno)
        return value

    def _puts(self, kw: str, toks: list[Token], lineno: int) -> None:
        values = ['' if x is None else str(x)
                  for x in self._args(toks[1:], lineno).pos]
        if kw == 'print':
            print(*values, sep='', end='')
        else:
            print('\n'.join(values))

    ##################################################
    # Expressions
    ##################################################

    def _isAssignment(self, toks: list[Token]) -> bool:
        return len(toks) > 2 and toks[0].kind == 'ident' \
            and toks[1].isOp('=', '||=', '+=', '-=')

    def _modifier(self, toks: list[Token]) -> tuple[list[Token], 'bool|None']:
        ''' Split trailing `if` / `unless` clause. Returns `None` if none. '''
        depth = 0
        for idx, tok in enumerate(toks):
            if tok.isOp('(', '[', '{'):
                depth += 1
            elif tok.isOp(')', ']', '}'):
                depth -= 1
            elif depth == 0 and idx > 0 and tok.isIdent('if', 'unless'):
                flag = self._condition(toks[idx + 1:], tok.lineno)
                return toks[:idx], flag != (tok.value == 'unless')
        return toks, None

    def _condition(self, toks: list[Token], lineno: int) -> bool:
        ''' Unsupported conditions evaluate to `False` '''
        if toks and toks[-1].isIdent('then'):
            toks = toks[:-1]
        try:
            return bool(self._expr(toks, lineno))
        except ScriptSyntaxError as e:
            self.notes.append(f'line {lineno}: unsupported condition, {e.msg}')
            return False

    def _expr(self, toks: list[Token], lineno: int) -> Any:
        value, i = self._orExpr(toks, 0, lineno)
        if i < len(toks):
            raise ScriptSyntaxError(f'unexpected {toks[i].value!r}', lineno)
        return value

    def _orExpr(self, toks: list[Token], i: int, lineno: int) -> tuple:
        left, i = self._andExpr(toks, i, lineno)
        while i < len(toks) and (toks[i].isOp('||') or toks[i].isIdent('or')):
            right, i = self._andExpr(toks, i + 1, lineno)
            left = left or right
        return left, i

    def _andExpr(self, toks: list[Token], i: int, lineno: int) -> tuple:
        left, i = self._notExpr(toks, i, lineno)
        while i < len(toks) and (toks[i].isOp('&&') or toks[i].isIdent('and')):
            right, i = self._notExpr(toks, i + 1, lineno)
            left = left and right
        return left, i

    def _notExpr(self, toks: list[Token], i: int, lineno: int) -> tuple:
        if i < len(toks) and (toks[i].isOp('!') or toks[i].isIdent('not')):
            value, i = self._notExpr(toks, i + 1, lineno)
            return not value, i
        left, i = self._value(toks, i, lineno)
        if i < len(toks) and toks[i].isOp(*self.CMP_OPS):
            op = toks[i].value
            right, i = self._value(toks, i + 1, lineno)
            return self._compare(left, op, right), i
        return left, i

    def _compare(self, left: Any, op: str, right: Any) -> bool:
        if left is None or right is None:
            return False  # e.g. `MacOS.version` on linux

        def asVersion(x: Any) -> Version:
            if isinstance(x, Version):
                return x
            if isinstance(x, Sym):
                return Version(Platform.ALL_OS.get(x, x))
            return Version(str(x))

        if isinstance(left, (Version, Sym)) or isinstance(right, (Version, Sym)) \
                or op not in ('==', '!='):
            return Utils.cmpVersion(asVersion(left), op, asVersion(right))
        return (left == right) == (op == '==')

    def _value(self, toks: list[Token], i: int, lineno: int) -> tuple:
        value, i = self._primary(toks, i, lineno)
        while i < len(toks):
            tok = toks[i]
            if tok.kind == 'call':
                value = self._method(value, tok.value, lineno)
                i += 1
            elif tok.isOp('/') and isinstance(value, str):
                right, i = self._primary(toks, i + 1, lineno)
                value = f'{value}/{right}'
            elif tok.isOp('+'):
                right, i = self._primary(toks, i + 1, lineno)
                value = self._concat(value, right)
            else:
                break
        return value, i

    def _primary(self, toks: list[Token], i: int, lineno: int) -> tuple:
        if i >= len(toks):
            raise ScriptSyntaxError('unexpected end of statement', lineno)
        tok = toks[i]
        if tok.kind == 'str':
            return self._interpolate(tok.value), i + 1
        if tok.kind == 'sym':
            return Sym(tok.value), i + 1
        if tok.kind in ('num', 'words', 'regex'):
            return tok.value, i + 1
        if tok.kind == 'ident':
            return self._identifier(toks, i, lineno)
        if tok.isOp('-') and i + 1 < len(toks) and toks[i + 1].kind == 'num':
            return -toks[i + 1].value, i + 2
        if tok.isOp('('):
            value, i = self._orExpr(toks, i + 1, lineno)
            return value, self._expect(toks, i, ')', lineno)
        if tok.isOp('['):
            items = []
            i += 1
            while i < len(toks) and not toks[i].isOp(']'):
                item, i = self._value(toks, i, lineno)
                items.append(item)
                if i < len(toks) and toks[i].isOp(','):
                    i += 1
            return items, self._expect(toks, i, ']', lineno)
        if tok.isOp('{'):
            rv = {}  # type: dict[str, Any]
            i += 1
            while i < len(toks) and not toks[i].isOp('}'):
                if toks[i].kind == 'label':
                    key = toks[i].value
                    i += 1
                else:
                    key, i = self._value(toks, i, lineno)
                    i = self._expect(toks, i, '=>', lineno)
                rv[str(key)], i = self._value(toks, i, lineno)
                if i < len(toks) and toks[i].isOp(','):
                    i += 1
            return rv, self._expect(toks, i, '}', lineno)
        raise ScriptSyntaxError(f'unexpected {tok.value!r}', lineno)

    def _identifier(self, toks: list[Token], i: int, lineno: int) -> tuple:
        name = toks[i].value
        i += 1
        if name in ('true', 'false', 'nil'):
            return {'true': True, 'false': False, 'nil': None}[name], i
        if name in self._locals:
            return self._locals[name], i
        if name in ('Formula', 'ENV') and i < len(toks) and toks[i].isOp('['):
            key, i = self._value(toks, i + 1, lineno)
            i = self._expect(toks, i, ']', lineno)
            if name == 'ENV':
                return os.environ.get(str(key)), i
            return FormulaRef(key), i
        if name in self.ARG_CALLS:
            arg, i = self._value(toks, i, lineno)
            opts = BuildOptions(self.flags, self._recipe.options)
            if name == 'build.with?':
                return opts.buildWith(str(arg)), i
            return opts.buildWithout(str(arg)), i
        if name in self.OPTIONAL_ARG_CALLS and i < len(toks) \
                and toks[i].isOp('('):
            _, i = self._primary(toks, i, lineno)
        return self._lookup(name, lineno), i

    def _lookup(self, name: str, lineno: int) -> Any:
        system = self.system
        opts = BuildOptions(self.flags, self._recipe.options)
        known = {
            'build.head?': opts.head,
            'build.stable?': opts.stable,
            'build.bottle?': opts.bottle,
            'OS.mac?': system.isMac,
            'OS.linux?': not system.isMac,
            'Hardware::CPU.arm?': system.isArm,
            'Hardware::CPU.intel?': not system.isArm,
        }  # type: dict[str, Any]
        if name in known:
            return known[name]
        if name == 'MacOS.version':
            return Version(system.osVersion) if system.isMac else None
        if name == 'DevelopmentTools.clang_build_version':
            return Version('.'.join(
                str(x) for x in DevelopmentTools.clangBuildVersion()))
        if name == 'DevelopmentTools.gcc_version':
            return Version('.'.join(
                str(x) for x in DevelopmentTools.gccVersion()))
        if name == 'Dir.home':
            return os.path.expanduser('~')
        if name == 'name':
            return self.name
        if name == 'version':
            return str(self._recipe.specs['stable'].version or '')
        if (path := self._kegPath(self.name, name, self._version())) \
                is not None:
            return path
        if '.' in name:
            base, *methods = name.split('.')
            value = self._lookup(base, lineno)
            for method in methods:
                value = self._method(value, method, lineno)
            return value
        if name[0].isupper():
            return Const(name)
        raise ScriptSyntaxError(
            f"undefined local variable or method '{name}'", lineno)

    def _version(self) -> 'str|None':
        version = self._recipe.specs['stable'].version
        return str(version) if version else None

    def _kegPath(
        self, formula: str, attr: str, version: 'str|None' = None,
    ) -> 'str|None':
        ''' Resolve `prefix`, `opt_bin`, `etc`, `HOMEBREW_PREFIX`, ... '''
        root = self.paths.ROOT
        if attr in ('HOMEBREW_PREFIX', 'HOMEBREW_REPOSITORY'):
            return root
        if attr == 'HOMEBREW_CELLAR':
            return self.paths.cellar
        if attr in ('etc', 'var'):
            return os.path.join(root, attr)
        if attr == 'pkgetc':
            return os.path.join(root, 'etc', formula)
        if attr.startswith('opt_') or not version:
            base = os.path.join(self.paths.opt, formula)
            attr = attr.removeprefix('opt_')
        else:
            base = os.path.join(self.paths.cellar, formula, version)
        if attr == 'pkgshare':
            return os.path.join(base, 'share', formula)
        if attr in self.KEG_DIRS:
            sub = self.KEG_DIRS[attr]
            return os.path.join(base, sub) if sub else base
        return None

    def _method(self, value: Any, method: str, lineno: int) -> Any:
        if method in ('freeze', 'dup'):
            return value
        if method == 'to_s':
            return '' if value is None else str(value)
        if method == 'chomp' and isinstance(value, str):
            return value[:-1] if value.endswith('\n') else value
        if method == 'strip' and isinstance(value, str):
            return value.strip()
        if method == 'downcase' and isinstance(value, str):
            return value.lower()
        if method == 'to_sym':
            return Sym(value)
        if method == 'to_i':
            return int(value)
        parts = {'major': slice(0, 1), 'minor': slice(1, 2),
                 'patch': slice(2, 3), 'major_minor': slice(0, 2),
                 'major_minor_patch': slice(0, 3)}
        if method in parts and isinstance(value, (str, Version)):
            return '.'.join(str(value).split('.')[parts[method]])
        if isinstance(value, FormulaRef):
            if method == 'any_version_installed?':
                return self.installed(str(value))
            if (path := self._kegPath(value, method)) is not None:
                return path
        raise ScriptSyntaxError(
            f"undefined method '{method}' for {value!r}", lineno)

    def _interpolate(self, parts: list) -> str:
        rv = []
        for part in parts:
            if not isinstance(part, Interp):
                rv.append(part)
                continue
            try:
                toks = [x for x in ScriptLexer(part.expr).tokenize()
                        if x.kind != 'nl']
                value = self._expr(toks, part.lineno)
            except ScriptSyntaxError:
                rv.append('#{' + part.expr + '}')  # keep as-is
            else:
                rv.append('' if value is None else str(value))
        return ''.join(rv)

    def _args(self, toks: list[Token], lineno: int) -> Args:
        ''' Parse call arguments, e.g. `"x", "y" => :build, since: :sonoma` '''
        if toks and toks[0].isOp('(') and \
                self._closing(toks, 0) == len(toks) - 1:
            toks = toks[1:-1]
        rv = Args([], {}, [])
        i = 0
        while i < len(toks):
            if toks[i].kind == 'label':
                key = toks[i].value
                rv.kw[key], i = self._value(toks, i + 1, lineno)
            else:
                value, i = self._value(toks, i, lineno)
                if i < len(toks) and toks[i].isOp('=>'):
                    target, i = self._value(toks, i + 1, lineno)
                    rv.pairs.append((value, target))
                else:
                    rv.pos.append(value)
            if i < len(toks):
                i = self._expect(toks, i, ',', lineno)
        return rv

    def _closing(self, toks: list[Token], start: int) -> int:
        depth = 0
        for idx in range(start, len(toks)):
            if toks[idx].isOp('(', '[', '{'):
                depth += 1
            elif toks[idx].isOp(')', ']', '}'):
                depth -= 1
                if depth == 0:
                    return idx
        return -1

    def _expect(self, toks: list[Token], i: int, op: str, lineno: int) -> int:
        if i < len(toks) and toks[i].isOp(op):
            return i + 1
        found = repr(toks[i].value) if i < len(toks) else 'end of statement'
        raise ScriptSyntaxError(f'expected {op!r} but found {found}', lineno)

    def _text(self, args: Args, stmt: Stmt) -> str:
        value = args.first()
        if not isinstance(value, str):
            raise ScriptSyntaxError(
                f"'{stmt.keyword}' expects a string argument", stmt.lineno)
        return str(value)

    def _tags(self, value: Any) -> tuple[str, ...]:
        if isinstance(value, (list, tuple)):
            return tuple(str(x) for x in value)
        return (str(value),) if value else ()

    def _concat(self, left: Any, right: Any) -> Any:
        if isinstance(left, list) and isinstance(right, list):
            return left + right
        if isinstance(left, (int, float)) and isinstance(right, (int, float)):
            return left + right
        return f'{"" if left is None else left}{"" if right is None else right}'

    def _plain(self, value: Any) -> Any:
        ''' Convert symbols to plain strings (recursively) '''
        if isinstance(value, dict):
            return {str(k): self._plain(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._plain(x) for x in value]
        if isinstance(value, Sym):
            return str(value)
        return value


# -----------------------------------
#  Formula
# -----------------------------------

class Formula:
    '''
    One resolved package definition. Metadata is shared with every other
    instance of the same `Recipe`, only the active spec and install state
    belong to this object.
    '''

    def __init__(
        self, recipe: Recipe, name: str, path: str,
        spec: 'str|None' = 'stable', *,
        paths: Paths,
        platform: Platform,
        aliasPath: 'str|None' = None,
        tap: 'Tap|None' = None,
        forceBottle: bool = False,
        flags: 'list[str]|None' = None,
    ) -> None:
        self.recipe = recipe
        self.name = name
        self.path = path
        self.paths = paths
        self.platform = platform
        self.aliasPath = aliasPath
        self.tap = tap
        self.forceBottle = forceBottle
        self.flags = flags or []
        self.build = None  # type: AbstractTab|None
        self.followInstalledAlias = True
        self.localBottlePath = None  # type: str|None
        self._activeSpec = None  # type: str|None
        if spec is not None:
            for name in (spec, 'stable', 'head'):
                if self._isDefined(name):
                    self._activeSpec = name
                    break
            else:
                raise FormulaSpecificationError(
                    f'{self.fullName}: formula requires at least a URL')

    def __repr__(self) -> str:
        return f'<Formula {self.fullName} ({self._activeSpec or "-"})>'

    def _isDefined(self, spec: str) -> bool:
        return spec in ('stable', 'head') and \
            getattr(self.recipe, spec) is not None

    # Spec selection

    @property
    def activeSpecName(self) -> 'str|None':
        ''' "stable", "head" or `None` if not committed yet '''
        return self._activeSpec

    @activeSpecName.setter
    def activeSpecName(self, spec: str) -> None:
        if not self._isDefined(spec):
            raise FormulaSpecificationError(
                f'{self.fullName}: {spec} spec is not available')
        self._activeSpec = spec

    @property
    def activeSpec(self) -> 'SoftwareSpec|None':
        return self.recipe.specs[self._activeSpec] \
            if self._activeSpec else None

    def _spec(self) -> SoftwareSpec:
        ''' Active spec or (if uncommitted) the one that would be used '''
        return self.activeSpec or self.recipe.stable or self.recipe.head \
            or self.recipe.specs['stable']

    @property
    def stable(self) -> 'SoftwareSpec|None':
        return self.recipe.stable

    @property
    def head(self) -> 'SoftwareSpec|None':
        return self.recipe.head

    # Names & provenance

    @property
    def fullName(self) -> str:
        ''' "name" for core formulae, "user/repo/name" otherwise '''
        if self.tap and not self.tap.isCore:
            return f'{self.tap}/{self.name}'
        return self.name

    @property
    def provenance(self) -> str:
        ''' One of: path, contents, api, stub, bottle '''
        return 'bottle' if self.localBottlePath else self.recipe.source

    @property
    def loadedFromApi(self) -> bool:
        return self.recipe.loadedFromApi

    @property
    def loadedFromStub(self) -> bool:
        return self.recipe.loadedFromStub

    @property
    def aliases(self) -> list[str]:
        return self.recipe.aliases

    @property
    def oldnames(self) -> list[str]:
        return self.recipe.oldnames

    @property
    def tapGitHead(self) -> 'str|None':
        return self.recipe.tapGitHead

    # Metadata

    @property
    def desc(self) -> 'str|None':
        return self.recipe.desc

    @property
    def homepage(self) -> 'str|None':
        return self.recipe.homepage

    @property
    def license(self) -> Any:
        return self.recipe.license

    @property
    def version(self) -> 'Version|None':
        return self._spec().version

    @property
    def revision(self) -> int:
        return self.recipe.revision

    @property
    def versionScheme(self) -> int:
        return self.recipe.versionScheme

    @property
    def pkgVersion(self) -> PkgVersion:
        return PkgVersion(self.version or Version('0'), self.recipe.revision)

    @property
    def dependencies(self) -> list[Dependency]:
        return list(self._spec().dependencies)

    @property
    def runtimeDependencies(self) -> list[Dependency]:
        ''' Declared dependencies without build, test and optional '''
        return [x for x in self.dependencies if x.runtime]

    @property
    def requirements(self) -> list[Requirement]:
        return list(self._spec().requirements)

    @property
    def invalidArch(self) -> list[str]:
        ''' Reasons why the current platform is not supported '''
        return [reason for req in self.requirements
                if (reason := req.unsatisfied(self.platform))]

    @property
    def bottle(self) -> 'BottleSpec|None':
        spec = self._spec()
        return spec.bottle if spec.name == 'stable' else None

    @property
    def bottleTag(self) -> str:
        return self.platform.bottleTag

    def hasBottle(self, tag: 'str|None' = None) -> bool:
        bottle = self.bottle
        return bool(bottle and bottle.tagSpec(tag or self.bottleTag))

    @property
    def service(self) -> 'Service|None':
        return self.recipe.service

    @property
    def caveats(self) -> 'str|None':
        return self.recipe.caveats

    @property
    def deprecation(self) -> 'Deprecation|None':
        return self.recipe.deprecation

    @property
    def disable(self) -> 'Deprecation|None':
        return self.recipe.disable

    @property
    def deprecated(self) -> bool:
        return bool(self.recipe.deprecation and self.recipe.deprecation.active())

    @property
    def disabled(self) -> bool:
        return bool(self.recipe.disable and self.recipe.disable.active())

    @property
    def conflicts(self) -> list[Conflict]:
        return self.recipe.conflicts

    @property
    def kegOnly(self) -> 'KegOnly|None':
        return self.recipe.kegOnly

    @property
    def options(self) -> list[Option]:
        return self.recipe.options

    # Installation state

    @property
    def rack(self) -> str:
        ''' Returns `@/Cellar/<name>` '''
        return self.paths.rack(self.name)

    @property
    def prefix(self) -> str:
        ''' Returns `@/Cellar/<name>/<pkg-version>` '''
        return os.path.join(self.rack, str(self.pkgVersion))

    @property
    def optPrefix(self) -> str:
        ''' Returns `@/opt/<name>` '''
        return os.path.join(self.paths.opt, self.name)

    @property
    def installedKegs(self) -> 'list[Keg]':
        return Keg.allInRack(self.rack, self.paths)

    @property
    def anyVersionInstalled(self) -> bool:
        return any(os.path.isfile(x.tabfile) for x in self.installedKegs)

    def install(self) -> list[str]:
        ''' Build steps of script definitions (API definitions have none) '''
        if self.recipe.loadedFromApi:
            raise UnsupportedMethodError(
                f'{self.fullName} was loaded from the API and cannot be '
                'built from source')
        return list(self.recipe.installSteps)

    def toDict(self) -> dict[str, Any]:
        ''' Metadata in the same shape as the formula API '''
        stable, head, bottle = self.stable, self.head, self.bottle
        deps = self.dependencies
        rv = {
            'name': self.name,
            'full_name': self.fullName,
            'tap': str(self.tap) if self.tap else None,
            'oldnames': self.oldnames,
            'aliases': self.aliases,
            'versioned_formulae': self.recipe.versionedFormulae,
            'desc': self.desc,
            'license': self.license,
            'homepage': self.homepage,
            'versions': {
                'stable': str(stable.version) if stable else None,
                'head': 'HEAD' if head else None,
                'bottle': bool(bottle and bottle.files),
            },
            'urls': {spec.name: dict(
                url=spec.url, checksum=spec.checksum, **spec.urlSpecs)
                for spec in (stable, head) if spec},
            'revision': self.revision,
            'version_scheme': self.versionScheme,
            'bottle': {'stable': {
                'rebuild': bottle.rebuild,
                'root_url': bottle.rootUrl,
                'files': {tag: {'cellar': x.cellar, 'sha256': x.sha256}
                          for tag, x in bottle.files.items()},
            }} if bottle else {},
            'keg_only_reason': {
                'reason': self.kegOnly.reason,
                'explanation': self.kegOnly.explanation,
            } if self.kegOnly else None,
            'dependencies': [x.name for x in deps if x.kind == 'required'],
            'uses_from_macos': [x.name for x in self._spec().usesFromMacos],
            'requirements': [{
                'name': x.name, 'version': x.version, 'contexts': list(x.tags)
            } for x in self.requirements],
            'conflicts_with': [x.name for x in self.conflicts],
            'conflicts_with_reasons': [x.because for x in self.conflicts],
            'link_overwrite': self.recipe.linkOverwrite,
            'caveats': self.caveats,
            'deprecated': self.deprecated,
            'disabled': self.disabled,
            'post_install_defined': self.recipe.postInstallDefined,
            'service': dict(self.service.options or {}, run=self.service.run,
                            name=self.service.name) if self.service else None,
            'tap_git_head': self.tapGitHead,
            'ruby_source_path': self.recipe.rubySourcePath,
            'ruby_source_checksum': {'sha256': self.recipe.rubySourceChecksum},
        }  # type: dict[str, Any]
        for kind in Dependency.KINDS:
            rv[f'{kind}_dependencies'] = [
                x.name for x in deps if x.kind == kind]
        for key, value in (('deprecation', self.deprecation),
                           ('disable', self.disable)):
            rv[f'{key}_date'] = value.date if value else None
            rv[f'{key}_reason'] = value.reason if value else None
        return rv


# -----------------------------------
#  Cask
# -----------------------------------

class Cask:
    ''' Prebuilt application. Metadata only, loaded from the cask API. '''
    FLIGHT_BLOCKS = ('preflight', 'postflight',
                     'uninstall_preflight', 'uninstall_postflight')
    UNINSTALL_ARTIFACTS = set([
        'app', 'suite', 'artifact', 'prefpane', 'qlplugin', 'mdimporter',
        'dictionary', 'font', 'service', 'colorpicker', 'inputmethod',
        'internet_plugin', 'keyboard_layout', 'audio_unit_plugin',
        'vst_plugin', 'vst3_plugin', 'screen_saver', 'binary', 'manpage',
        'bash_completion', 'fish_completion', 'zsh_completion',
        'uninstall', 'zap',
    ])

    def __init__(
        self, token: str, doc: dict[str, Any], *,
        paths: Paths, tap: 'Tap|None' = None,
        sourcefilePath: 'str|None' = None,
    ) -> None:
        self.token = token
        self.doc = doc
        self.paths = paths
        self.tap = tap
        self.sourcefilePath = sourcefilePath
        self.names = doc.get('name') or []  # type: list[str]
        self.desc = doc.get('desc')  # type: str|None
        self.homepage = doc.get('homepage')  # type: str|None
        self.url = doc.get('url')  # type: str|None
        self.version = str(doc.get('version') or '')
        self.sha256 = doc.get('sha256')  # type: str|None
        self.artifacts = doc.get('artifacts') or []  # type: list[dict]
        self.caveats = doc.get('caveats')  # type: str|None
        self.dependsOn = doc.get('depends_on') or {}  # type: dict[str, Any]
        self.conflictsWith = doc.get('conflicts_with') or {}  # type: dict
        self.tapGitHead = doc.get('tap_git_head')  # type: str|None
        self.deprecation = Deprecation.fromReason(
            doc.get('deprecation_date'), doc.get('deprecation_reason'),
            doc.get('deprecation_replacement_cask')
        ) if doc.get('deprecated') else None
        self.disable = Deprecation.fromReason(
            doc.get('disable_date'), doc.get('disable_reason'),
            doc.get('disable_replacement_cask')
        ) if doc.get('disabled') else None

    def __repr__(self) -> str:
        return f'<Cask {self.token} {self.version}>'

    @property
    def fullName(self) -> str:
        if self.tap and self.tap.name != Taps.CORE_CASK:
            return f'{self.tap}/{self.token}'
        return self.token

    @property
    def caskroomPath(self) -> str:
        ''' Returns `@/Caskroom/<token>` '''
        return os.path.join(self.paths.caskroom, self.token)

    @property
    def metadataMainContainerPath(self) -> str:
        ''' Returns `@/Caskroom/<token>/.metadata` '''
        return os.path.join(self.caskroomPath, '.metadata')

    @property
    def uninstallFlightBlocks(self) -> bool:
        return any(key.startswith('uninstall_')
                   for artifact in self.artifacts for key in artifact
                   if key in Cask.FLIGHT_BLOCKS)

    def artifactsList(self, *, uninstallOnly: bool = False) -> list[dict]:
        ''' Artifact stanzas. `uninstallOnly` keeps those removed on uninstall '''
        rv = []
        for artifact in self.artifacts:
            for key, value in artifact.items():
                if uninstallOnly:
                    if key in Cask.FLIGHT_BLOCKS:
                        if not key.startswith('uninstall_'):
                            continue
                    elif key not in Cask.UNINSTALL_ARTIFACTS:
                        continue
                rv.append({key: value})
        return rv


# -----------------------------------
#  FormulaCache
# -----------------------------------

class FormulaCache:
    '''
    Platform tag -> category -> key -> value. Tables live as long as their
    owner, there is no eviction. Not synchronized: resolution is assumed to
    be single-threaded (a per-platform lock would be needed otherwise).
    '''
    CATEGORIES = ('path', 'api', 'stub', 'cask', 'formulary_factory')

    def __init__(self, system: SimulateSystem, *, keepFactory: bool = True):
        self.system = system
        self.keepFactory = keepFactory
        self._tables = {}  # type: dict[str, dict[str, dict[str, Any]]]

    def table(self, category: str) -> dict[str, Any]:
        ''' Sub-table of `category` for the current (simulated) platform '''
        assert category in FormulaCache.CATEGORIES, f'unknown "{category}"'
        tables = self._tables.setdefault(self.system.current.cacheTag, {})
        return tables.setdefault(category, {})

    def has(self, category: str, key: str) -> bool:
        return key in self.table(category)

    def get(self, category: str, key: str, default: Any = None) -> Any:
        return self.table(category).get(key, default)

    def put(self, category: str, key: str, value: Any) -> Any:
        self.table(category)[key] = value
        return value

    def clear(self) -> None:
        ''' Drop all tables of all platforms (factory results are kept) '''
        for tables in self._tables.values():
            for category in list(tables):
                if category == 'formulary_factory' and self.keepFactory:
                    continue
                del tables[category]


# -----------------------------------
#  Materializer
# -----------------------------------

class Materializer:
    '''
    Turn script text, API JSON or a stub into `Recipe` objects.
    Script namespaces are keyed by platform and source identity (path or
    content digest), never by name alone.
    '''
    LOCK = threading.RLock()  # evaluation redirects the process stdout
    RX_PLACEHOLDER = re.compile(r'\$(HOMEBREW_PREFIX|HOMEBREW_CELLAR|HOME)\b')
    REQUIREMENTS = ('arch', 'linux', 'macos', 'maximum_macos', 'xcode')

    def __init__(
        self, paths: Paths, system: SimulateSystem, cache: FormulaCache,
        config: Config, installed: 'Callable[[str], bool]|None' = None,
    ) -> None:
        self.paths = paths
        self.system = system
        self.cache = cache
        self.config = config
        self.installed = installed
        self.namespaces = {}  # type: dict[str, Namespace]

    @staticmethod
    def className(name: str) -> str:
        ''' e.g. "foo-bar" -> "FooBar", "gtk+3" -> "Gtkx3", "a@1.2" -> "AAT12" '''
        rv = name.capitalize()
        rv = re.sub(r'[-_.\s]([a-zA-Z0-9])', lambda m: m.group(1).upper(), rv)
        rv = rv.replace('+', 'x')
        return re.sub(r'(.)@(\d)', r'\1AT\2', rv, count=1)

    def namespaceKey(self, identifier: str) -> str:
        ''' Digest of current platform tag + path (or content digest) '''
        tag = self.system.current.cacheTag
        return hashlib.sha256(f'{tag}:{identifier}'.encode()).hexdigest()

    ##################################################
    # Script source
    ##################################################

    def loadFormula(
        self, name: str, path: str, contents: str, namespace: str, *,
        source: str = 'path',
        flags: 'list[str]|None' = None,
        ignoreErrors: bool = False,
    ) -> Recipe:
        '''
        Evaluate `contents` once per `namespace` and return the construct
        named `className(name)`.
        '''
        with Materializer.LOCK:
            ns = self.namespaces.get(namespace)
            if ns is None:
                ns = self._evaluate(name, path, contents, namespace,
                                    source, flags, ignoreErrors)
            className = Materializer.className(name)
            recipe = ns.classes.get(className)
            if recipe is None:
                self.namespaces.pop(namespace, None)
                raise FormulaClassUnavailableError(
                    name, path, className, ns.classList())
            return recipe

    def _evaluate(
        self, name: str, path: str, contents: str, namespace: str,
        source: str, flags: 'list[str]|None', ignoreErrors: bool,
    ) -> Namespace:
        parser = ScriptParser(
            name, path,
            system=self.system.current,
            paths=self.paths,
            flags=flags,
            installed=self.installed,
            ignoreErrors=ignoreErrors,
            bottleDomain=self.config.BOTTLE_DOMAIN,
        )
        ns = self.namespaces[namespace] = Namespace(namespace, {})
        output = StringIO()
        try:
            with redirect_stdout(output):
                classes = parser.parse(contents)
        except Exception as e:
            del self.namespaces[namespace]
            raise FormulaUnreadableError(name, e) from e
        finally:
            if text := output.getvalue().strip():
                Log.warn(f'Formula {name} attempted to print the following '
                         f'while being loaded:\n{text}')

        for recipe in classes.values():
            if recipe:
                recipe.source = source
        ns.classes.update(classes)
        for err in parser.warnings:
            err.ignore()
        for note in parser.notes:
            Log.debug(f'[DEBUG] {name}: {note}')
        return ns

    def loadFormulaFromPath(
        self, name: str, path: str, *,
        flags: 'list[str]|None' = None, ignoreErrors: bool = False,
    ) -> Recipe:
        key = ' '.join([path] + sorted(flags or []))
        if recipe := self.cache.get('path', key):
            return recipe  # type: ignore[no-any-return]
        with open(path) as fp:
            contents = fp.read()
        namespace = 'FormulaNamespace' + self.namespaceKey(key)
        recipe = self.loadFormula(name, path, contents, namespace,
                                  flags=flags, ignoreErrors=ignoreErrors)
        return self.cache.put('path', key, recipe)  # type: ignore

    def loadFormulaFromContents(
        self, name: str, path: str, contents: str, *,
        flags: 'list[str]|None' = None, ignoreErrors: bool = False,
    ) -> Recipe:
        digest = hashlib.md5(contents.encode()).hexdigest()
        key = ' '.join([digest] + sorted(flags or []))
        namespace = 'FormulaNamespace' + self.namespaceKey(key)
        return self.loadFormula(name, path, contents, namespace,
                                source='contents', flags=flags,
                                ignoreErrors=ignoreErrors)

    ##################################################
    # API JSON
    ##################################################

    def loadFormulaFromJson(self, name: str, doc: dict[str, Any]) -> Recipe:
        ''' Cached per platform. `doc` is never modified. '''
        if recipe := self.cache.get('api', name):
            return recipe  # type: ignore[no-any-return]
        return self.cache.put(  # type: ignore[no-any-return]
            'api', name, self.recipeFromJson(name, doc))

    def recipeFromJson(
        self, name: str, doc: dict[str, Any], source: str = 'api',
    ) -> Recipe:
        system = self.system.current
        doc = dict(doc)
        doc.update((doc.get('variations') or {}).get(system.bottleTag) or {})

        recipe = Recipe(Materializer.className(name), source)
        recipe.apiSource = doc
        recipe.desc = doc.get('desc')
        recipe.homepage = doc.get('homepage')
        recipe.license = doc.get('license')
        recipe.revision = int(doc.get('revision') or 0)
        recipe.versionScheme = int(doc.get('version_scheme') or 0)

        urls = doc.get('urls') or {}
        for specName in ('stable', 'head'):
            urlDoc = urls.get(specName)
            if not urlDoc:
                continue
            spec = recipe.specs[specName]
            spec.url = urlDoc.get('url')
            spec.checksum = urlDoc.get('checksum')
            spec.urlSpecs = {k: str(v) for k, v in urlDoc.items()
                             if k in ('tag', 'revision', 'branch', 'using')
                             and v is not None}
            if specName == 'stable':
                spec.version = (doc.get('versions') or {}).get('stable')
            self._dependencies(
                spec, doc.get(f'{specName}_dependencies') or doc, doc, system)

        bottleDoc = (doc.get('bottle') or {}).get('stable')
        if bottleDoc and recipe.stable:
            bottle = BottleSpec(
                bottleDoc.get('root_url') or self.config.BOTTLE_DOMAIN,
                int(bottleDoc.get('rebuild') or 0))
            for tag, item in (bottleDoc.get('files') or {}).items():
                bottle.add(tag, item['sha256'],
                           item.get('cellar') or self.paths.cellar)
            recipe.specs['stable'].bottle = bottle

        for req in doc.get('requirements') or []:
            if req.get('name') not in Materializer.REQUIREMENTS:
                continue  # e.g. codesign, cannot be represented
            value = Requirement(req['name'], req.get('version'),
                                tuple(req.get('contexts') or ()))
            for specName in req.get('specs') or ('stable', 'head'):
                if spec := recipe.specs.get(specName):
                    spec.requirements.append(value)

        if reason := doc.get('keg_only_reason'):
            recipe.kegOnly = KegOnly(
                str(reason.get('reason') or '').lstrip(':'),
                reason.get('explanation') or '')
        if doc.get('deprecated') or doc.get('deprecation_date'):
            recipe.deprecation = Deprecation.fromReason(
                doc.get('deprecation_date'), doc.get('deprecation_reason'),
                doc.get('deprecation_replacement_formula')
                or doc.get('deprecation_replacement_cask'))
        if doc.get('disabled') or doc.get('disable_date'):
            recipe.disable = Deprecation.fromReason(
                doc.get('disable_date'), doc.get('disable_reason'),
                doc.get('disable_replacement_formula')
                or doc.get('disable_replacement_cask'))

        reasons = doc.get('conflicts_with_reasons') or []
        recipe.conflicts = [
            Conflict(x, reasons[idx] if idx < len(reasons) else None)
            for idx, x in enumerate(doc.get('conflicts_with') or [])]
        recipe.linkOverwrite = list(doc.get('link_overwrite') or [])
        recipe.pourBottleOnlyIf = doc.get('pour_bottle_only_if')
        recipe.postInstallDefined = doc.get('post_install_defined', True)
        if serviceDoc := doc.get('service'):
            recipe.service = self._service(serviceDoc, system)
        recipe.caveats = doc.get('caveats')
        recipe.tapGitHead = doc.get('tap_git_head')
        recipe.oldnames = list(doc.get('oldnames') or (
            [doc['oldname']] if doc.get('oldname') else []))
        recipe.aliases = list(doc.get('aliases') or [])
        recipe.versionedFormulae = list(doc.get('versioned_formulae') or [])
        recipe.rubySourcePath = doc.get('ruby_source_path')
        recipe.rubySourceChecksum = \
            (doc.get('ruby_source_checksum') or {}).get('sha256') \
            or doc.get('ruby_source_sha256')
        self._substitutePlaceholders(recipe)
        return recipe

    def _dependencies(
        self, spec: SoftwareSpec, depDoc: dict[str, Any],
        doc: dict[str, Any], system: Platform,
    ) -> None:
        usesDoc = depDoc.get('uses_from_macos') or []
        usesNames = [x if isinstance(x, str) else next(iter(x))
                     for x in usesDoc]
        # older documents listed uses_from_macos as plain linux dependencies
        legacy = 'uses_from_macos_bounds' not in doc and not system.isMac
        for kind in ('required',) + Dependency.KINDS:
            key = 'dependencies' if kind == 'required' \
                else f'{kind}_dependencies'
            for name in depDoc.get(key) or []:
                if legacy and name in usesNames:
                    continue
                tags = () if kind == 'required' else (kind,)
                spec.dependsOn(Dependency(name, tags))

        bounds = depDoc.get('uses_from_macos_bounds') or []
        for idx, entry in enumerate(usesDoc):
            since = (bounds[idx] if idx < len(bounds) else None) or {}
            if isinstance(entry, dict):
                name, tags = next(iter(entry.items()))  # {"python": "build"}
                dep = Dependency(name, tuple(
                    tags if isinstance(tags, list) else [tags]))
            else:
                dep = Dependency(entry)
            spec.addUsesFromMacos(dep, since.get('since'), system)

    def _service(self, doc: dict[str, Any], system: Platform) -> Service:
        run = doc.get('run') or []
        if isinstance(run, dict):
            run = run.get(system.os) or []
        name = doc.get('name')
        if isinstance(name, dict):
            name = name.get(system.os)
        return Service(
            [str(x) for x in ([run] if isinstance(run, str) else run)],
            name,
            {k: v for k, v in doc.items() if k not in ('run', 'name')})

    def _substitutePlaceholders(self, recipe: Recipe) -> None:
        ''' Replace $HOMEBREW_PREFIX, $HOMEBREW_CELLAR and $HOME (once) '''
        recipe.caveats = self._substitute(recipe.caveats)
        if svc := recipe.service:
            recipe.service = Service(self._substitute(svc.run), svc.name,
                                     self._substitute(svc.options or {}))

    def _substitute(self, value: Any) -> Any:
        if isinstance(value, str):
            values = {
                'HOMEBREW_PREFIX': self.paths.ROOT,
                'HOMEBREW_CELLAR': self.paths.cellar,
                'HOME': os.path.expanduser('~'),
            }
            return Materializer.RX_PLACEHOLDER.sub(
                lambda m: values[m.group(1)], value)
        if isinstance(value, list):
            return [self._substitute(x) for x in value]
        if isinstance(value, dict):
            return {k: self._substitute(v) for k, v in value.items()}
        return value

    ##################################################
    # Stub & cask
    ##################################################

    def loadFormulaFromStub(self, name: str, stub: FormulaStub) -> Recipe:
        ''' Minimal definition: version and current-platform bottle only '''
        if recipe := self.cache.get('stub', name):
            return recipe  # type: ignore[no-any-return]
        recipe = Recipe(Materializer.className(name), 'stub')
        spec = recipe.specs['stable']
        spec.url = f'formula-stub://{name}/{stub.pkgVersion}'
        spec.version = str(stub.version)
        recipe.revision = stub.revision
        spec.bottle = BottleSpec(self.config.BOTTLE_DOMAIN, stub.rebuild)
        if stub.sha256:
            spec.bottle.add(self.system.current.bottleTag, stub.sha256,
                            self.paths.cellar)
        return self.cache.put('stub', name, recipe)  # type: ignore

    def loadCaskFromJson(
        self, token: str, doc: dict[str, Any], *,
        tap: 'Tap|None' = None, sourcefilePath: 'str|None' = None,
    ) -> Cask:
        if cask := self.cache.get('cask', token):
            return cask  # type: ignore[no-any-return]
        doc = dict(doc)
        bottleTag = self.system.current.bottleTag
        doc.update((doc.get('variations') or {}).get(bottleTag) or {})
        doc['caveats'] = self._substitute(doc.get('caveats'))
        cask = Cask(token, doc, paths=self.paths, tap=tap,
                    sourcefilePath=sourcefilePath)
        return self.cache.put('cask', token, cask)  # type: ignore


# -----------------------------------
#  Reference
# -----------------------------------

class Reference:
    ''' Classification of user supplied references (no file system access) '''
    RX_BOTTLE = re.compile(r'\.([a-z0-9_]+)\.bottle\.(?:(\d+)\.)?tar\.gz$')
    RX_URI = re.compile(r'^[A-Za-z][A-Za-z0-9+.-]+://')
    RX_NAME = re.compile(r'^[\w+\-.@]+$')
    RX_TAP_NAME = re.compile(r'^([\w-]+)/([\w-]+)/([\w+\-.@]+)$')
    RX_CORE_NAME = re.compile(
        r'^(?:[Hh]omebrew/(?:homebrew-)?core/)?([\w+\-.@]+)$')

    @staticmethod
    def classify(ref: str, paths: Paths) -> str:
        ''' One of: bottle, uri, tap, name, cache, keg, path '''
        if Reference.RX_BOTTLE.search(ref):
            return 'bottle'
        if Reference.RX_URI.match(ref):
            return 'uri'
        if Reference.RX_TAP_NAME.match(ref):
            return 'tap'
        if Reference.RX_NAME.match(ref) and not ref.endswith('.rb'):
            return 'name'
        absPath = os.path.abspath(ref)
        if absPath.startswith(paths.formulaCache + os.sep):
            return 'cache'
        if absPath.startswith((paths.cellar + os.sep, paths.opt + os.sep)):
            return 'keg'
        return 'path'


# -----------------------------------
#  Loaders
# -----------------------------------

class FormulaLoader:
    '''
    Base class. `tryClaim()` only checks (and at most tests file existence),
    `materialize()` does the actual loading.
    '''

    def __init__(
        self, ctx: 'Formulary', name: str, path: str, *,
        aliasPath: 'str|None' = None, tap: 'Tap|None' = None,
    ) -> None:
        self.ctx = ctx
        self.name = name
        self.path = path
        self.aliasPath = aliasPath
        self.tap = tap

    def __repr__(self) -> str:
        return f'<{type(self).__name__} {self.name} {self.path}>'

    @classmethod
    def tryClaim(
        cls, ctx: 'Formulary', ref: str, *,
        fromWhere: 'str|None' = None, warn: bool = False,
    ) -> 'FormulaLoader|None':
        raise NotImplementedError

    def materialize(
        self, spec: 'str|None' = 'stable', *,
        aliasPath: 'str|None' = None,
        forceBottle: bool = False,
        flags: 'list[str]|None' = None,
        ignoreErrors: bool = False,
    ) -> Formula:
        recipe = self.recipe(flags=flags, ignoreErrors=ignoreErrors)
        return Formula(
            recipe, self.name, self.path, spec,
            paths=self.ctx.paths,
            platform=self.ctx.system.current,
            aliasPath=aliasPath or self.aliasPath,
            tap=self.tap,
            forceBottle=forceBottle,
            flags=flags,
        )

    def recipe(
        self, *, flags: 'list[str]|None' = None, ignoreErrors: bool = False,
    ) -> Recipe:
        return self.loadFile(flags=flags, ignoreErrors=ignoreErrors)

    def loadFile(
        self, *, flags: 'list[str]|None' = None, ignoreErrors: bool = False,
    ) -> Recipe:
        if not os.path.isfile(self.path):
            raise FormulaUnavailableError(self.name)
        return self.ctx.materializer.loadFormulaFromPath(
            self.name, self.path, flags=flags, ignoreErrors=ignoreErrors)


class FromBottleLoader(FormulaLoader):
    ''' Local bottle archive, e.g. `foo--1.0.arm64_sonoma.bottle.tar.gz` '''

    def __init__(self, ctx: 'Formulary', bottlePath: str) -> None:
        self.bottlePath = bottlePath
        try:
            name, fullName = BottleArchive(bottlePath).names()
        except Exception as e:
            Log.warn(f'Unreadable bottle {bottlePath}:\n{e}')
            name = fullName = os.path.basename(bottlePath).split('--')[0]
        super().__init__(ctx, name, ctx.path(fullName))

    @classmethod
    def tryClaim(
        cls, ctx: 'Formulary', ref: str, *,
        fromWhere: 'str|None' = None, warn: bool = False,
    ) -> 'FormulaLoader|None':
        if ctx.config.FORBID_PATHS:
            return None
        if not Reference.RX_BOTTLE.search(os.path.basename(ref)) \
                or not os.path.isfile(ref):
            return None
        return cls(ctx, ref)

    def materialize(
        self, spec: 'str|None' = 'stable', *,
        aliasPath: 'str|None' = None,
        forceBottle: bool = False,
        flags: 'list[str]|None' = None,
        ignoreErrors: bool = False,
    ) -> Formula:
        try:
            contents = BottleArchive(self.bottlePath).formulaContents(
                self.name)
            recipe = self.ctx.materializer.loadFormulaFromContents(
                self.name, self.path, contents,
                flags=flags, ignoreErrors=ignoreErrors)
            formula = Formula(
                recipe, self.name, self.path, spec,
                paths=self.ctx.paths,
                platform=self.ctx.system.current,
                aliasPath=aliasPath,
                forceBottle=forceBottle,
                flags=flags,
            )
        except BottleFormulaUnavailableError as e:
            Log.warn(f'{e}\nFalling back to non-bottle formula.')
            formula = self._fallback(spec, aliasPath, forceBottle, flags,
                                     ignoreErrors)
        except Exception as e:
            Log.warn(f'Unreadable formula in {self.bottlePath}:\n{e}')
            formula = self._fallback(spec, aliasPath, forceBottle, flags,
                                     ignoreErrors)
        formula.localBottlePath = self.bottlePath
        return formula

    def _fallback(
        self, spec: 'str|None', aliasPath: 'str|None', forceBottle: bool,
        flags: 'list[str]|None', ignoreErrors: bool,
    ) -> Formula:
        return super().materialize(
            spec, aliasPath=aliasPath, forceBottle=forceBottle, flags=flags,
            ignoreErrors=ignoreErrors)


class FromURILoader(FormulaLoader):
    ''' Formula file URL. Only `file://` is accepted. '''
    ALLOWED_SCHEMES = ('file',)

    def __init__(self, ctx: 'Formulary', url: str) -> None:
        self.url = url
        fname = os.path.basename(urlparse(url).path)
        name = fname.removesuffix('.rb')
        super().__init__(ctx, name, os.path.join(ctx.paths.formulaCache,
                                                 name + '.rb'))

    @classmethod
    def tryClaim(
        cls, ctx: 'Formulary', ref: str, *,
        fromWhere: 'str|None' = None, warn: bool = False,
    ) -> 'FormulaLoader|None':
        if ctx.config.FORBID_PATHS or not Reference.RX_URI.match(ref):
            return None
        uri = urlparse(ref)
        if not uri.scheme or not uri.path:
            return None
        return cls(ctx, ref)

    def loadFile(
        self, *, flags: 'list[str]|None' = None, ignoreErrors: bool = False,
    ) -> Recipe:
        if urlparse(self.url).scheme not in FromURILoader.ALLOWED_SCHEMES:
            raise UnsupportedInstallationMethodError(
                f'Non-checksummed download of {self.name} formula file from '
                'an arbitrary URL is unsupported! Use `brew extract` or '
                '`brew create` and `brew tap-new` to create a formula file '
                'in a tap on GitHub instead.')
        if os.path.exists(self.path):
            os.remove(self.path)
        Curl.download(self.url, self.path)
        return super().loadFile(flags=flags, ignoreErrors=ignoreErrors)


class FromAPILoader(FormulaLoader):
    ''' Core formula from the prefetched JSON API '''

    @classmethod
    def tryClaim(
        cls, ctx: 'Formulary', ref: str, *,
        fromWhere: 'str|None' = None, warn: bool = False,
    ) -> 'FormulaLoader|None':
        if not ctx.config.API_ENABLED:
            return None
        match = Reference.RX_CORE_NAME.match(ref)
        if not match:
            return None
        name = match.group(1)
        api = ctx.api
        if name not in api.formulae and name not in api.formulaAliases \
                and name not in api.formulaRenames:
            return None
        nameTapType = ctx.tapFormulaNameType(f'{Taps.CORE}/{name}', warn=warn)
        if not nameTapType:
            return None
        name, tap, kind = nameTapType
        aliasPath = os.path.join(tap.aliasDir, match.group(1).lower()) \
            if kind == 'alias' else None
        return cls(ctx, name, ctx.corePath(name), aliasPath=aliasPath, tap=tap)

    def recipe(
        self, *, flags: 'list[str]|None' = None, ignoreErrors: bool = False,
    ) -> Recipe:
        doc = self.ctx.api.formula(self.name)
        if doc is None:
            raise FormulaUnavailableError(self.name)
        return self.ctx.materializer.loadFormulaFromJson(self.name, doc)


class FormulaStubLoader(FromAPILoader):
    ''' Bottle-only stub from the internal API '''

    @classmethod
    def tryClaim(
        cls, ctx: 'Formulary', ref: str, *,
        fromWhere: 'str|None' = None, warn: bool = False,
    ) -> 'FormulaLoader|None':
        if not ctx.config.API_INTERNAL:
            return None
        return super().tryClaim(ctx, ref, fromWhere=fromWhere, warn=warn)

    def recipe(
        self, *, flags: 'list[str]|None' = None, ignoreErrors: bool = False,
    ) -> Recipe:
        stub = self.ctx.api.formulaStub(
            self.name, self.ctx.system.current.bottleTag)
        if stub is None:
            raise FormulaUnavailableError(self.name)
        return self.ctx.materializer.loadFormulaFromStub(self.name, stub)


class FromTapLoader(FormulaLoader):
    ''' Tap qualified name, e.g. `user/repo/name` '''

    @classmethod
    def tryClaim(
        cls, ctx: 'Formulary', ref: str, *,
        fromWhere: 'str|None' = None, warn: bool = False,
    ) -> 'FormulaLoader|None':
        nameTapType = ctx.tapFormulaNameType(ref, warn=warn)
        if not nameTapType:
            return None
        name, tap, kind = nameTapType
        if kind == 'migration' and tap.isCore and (
                loader := FromAPILoader.tryClaim(ctx, name)):
            return loader
        aliasPath = None
        if kind == 'alias':
            aliasPath = os.path.join(tap.aliasDir, ref.split('/')[-1].lower())
        return cls(ctx, name, ctx.findFormulaInTap(name, tap),
                   aliasPath=aliasPath, tap=tap)

    def materialize(
        self, spec: 'str|None' = 'stable', *,
        aliasPath: 'str|None' = None,
        forceBottle: bool = False,
        flags: 'list[str]|None' = None,
        ignoreErrors: bool = False,
    ) -> Formula:
        assert self.tap
        try:
            return super().materialize(
                spec, aliasPath=aliasPath, forceBottle=forceBottle,
                flags=flags, ignoreErrors=ignoreErrors)
        except FormulaClassUnavailableError as e:
            raise TapFormulaClassUnavailableError(
                self.tap, self.name, e.path, e.className, e.classList) from e
        except FormulaUnreadableError as e:
            raise TapFormulaUnreadableError(
                self.tap, self.name, e.formulaError) from e
        except FormulaUnavailableError as e:
            raise TapFormulaUnavailableError(self.tap, self.name) from e


class FromPathLoader(FormulaLoader):
    ''' Formula file on disk (symlinks inside a tap are aliases) '''

    def __init__(
        self, ctx: 'Formulary', path: str, *,
        aliasPath: 'str|None' = None, tap: 'Tap|None' = None,
    ) -> None:
        path = os.path.abspath(path)
        if aliasPath and tap and os.path.dirname(aliasPath) != tap.aliasDir:
            aliasPath = None
        name = os.path.basename(path).removesuffix('.rb')
        super().__init__(ctx, name, path, aliasPath=aliasPath, tap=tap)

    @classmethod
    def tryClaim(
        cls, ctx: 'Formulary', ref: str, *,
        fromWhere: 'str|None' = None, warn: bool = False,
    ) -> 'FormulaLoader|None':
        path = os.path.abspath(os.path.expanduser(ref))
        if not os.path.exists(path):
            return None
        if ctx.config.FORBID_PATHS:
            realPath = os.path.realpath(path)
            allowed = (ctx.paths.cellar + os.sep, ctx.paths.taps + os.sep)
            if (realPath.endswith('.rb') or ref.endswith('.rb')) \
                    and not realPath.startswith(allowed) \
                    and not path.startswith(allowed):
                if './' in ref or ref.endswith('.rb') or ref.count('/') != 2:
                    raise UnsupportedInstallationMethodError(
                        'Homebrew requires formulae to be in a tap, '
                        f'rejecting:\n  {ref} ({realPath})\n\n'
                        'To create a tap, run e.g.\n'
                        '  brew tap-new <user|org>/<repository>\n'
                        'To create a formula in a tap run e.g.\n'
                        '  brew create <url> --tap=<user|org>/<repository>')
                return None  # looks like a tap name

        aliasPath = None
        tap = ctx.taps.fromPath(path)
        if tap and os.path.islink(path):
            aliasPath = path
            path = os.path.realpath(path)
        if not path.endswith('.rb'):
            return None
        return cls(ctx, path, aliasPath=aliasPath, tap=tap)


class FromNameLoader(FromTapLoader):
    ''' Unqualified name, searched in all installed taps '''

    @classmethod
    def tryClaim(
        cls, ctx: 'Formulary', ref: str, *,
        fromWhere: 'str|None' = None, warn: bool = False,
    ) -> 'FormulaLoader|None':
        if not Reference.RX_NAME.match(ref):
            return None
        core = ctx.taps.core
        if core.installed:
            loader = super().tryClaim(ctx, f'{core}/{ref}', warn=warn)
            if loader and os.path.exists(loader.path):
                return loader  # default tap never ambiguous

        loaders = []  # type: list[FormulaLoader]
        seen = set()  # type: set[str]
        for tap in ctx.taps.installed():
            if tap.isCore:
                continue
            loader = super().tryClaim(ctx, f'{tap}/{ref}', warn=warn)
            if not loader:
                continue
            realPath = os.path.realpath(loader.path)
            if realPath in seen:
                continue
            seen.add(realPath)
            if isinstance(loader, FromAPILoader) or \
                    os.path.exists(loader.path):
                loaders.append(loader)

        if len(loaders) > 1:
            raise TapFormulaAmbiguityError(ref, loaders)
        return loaders[0] if loaders else None


class FromKegLoader(FormulaLoader):
    ''' Copy of the formula inside an installed keg `opt/<x>/.brew/<x>.rb` '''

    @classmethod
    def tryClaim(
        cls, ctx: 'Formulary', ref: str, *,
        fromWhere: 'str|None' = None, warn: bool = False,
    ) -> 'FormulaLoader|None':
        if not Reference.RX_NAME.match(ref):
            return None
        path = os.path.join(ctx.paths.opt, ref, '.brew', ref + '.rb')
        return cls(ctx, ref, path) if os.path.isfile(path) else None


class FromCacheLoader(FormulaLoader):
    ''' Previously downloaded formula `cache/Formula/<x>.rb` '''

    @classmethod
    def tryClaim(
        cls, ctx: 'Formulary', ref: str, *,
        fromWhere: 'str|None' = None, warn: bool = False,
    ) -> 'FormulaLoader|None':
        if not Reference.RX_NAME.match(ref):
            return None
        path = os.path.join(ctx.paths.formulaCache, ref + '.rb')
        return cls(ctx, ref, path) if os.path.isfile(path) else None


class NullLoader(FormulaLoader):
    ''' Final fallback, always fails with `FormulaUnavailableError` '''

    def __init__(self, ctx: 'Formulary', ref: str) -> None:
        name = os.path.basename(ref).removesuffix('.rb')
        super().__init__(ctx, name, ctx.corePath(name))

    @classmethod
    def tryClaim(
        cls, ctx: 'Formulary', ref: str, *,
        fromWhere: 'str|None' = None, warn: bool = False,
    ) -> 'FormulaLoader|None':
        return cls(ctx, ref)

    def recipe(
        self, *, flags: 'list[str]|None' = None, ignoreErrors: bool = False,
    ) -> Recipe:
        raise FormulaUnavailableError(self.name)


class FormulaContentsLoader(FormulaLoader):
    ''' Script text which is not (necessarily) on disk '''

    def __init__(
        self, ctx: 'Formulary', name: str, path: str, contents: str, *,
        aliasPath: 'str|None' = None,
    ) -> None:
        super().__init__(ctx, name, path, aliasPath=aliasPath)
        self.contents = contents

    def recipe(
        self, *, flags: 'list[str]|None' = None, ignoreErrors: bool = False,
    ) -> Recipe:
        return self.ctx.materializer.loadFormulaFromContents(
            self.name, self.path, self.contents,
            flags=flags, ignoreErrors=ignoreErrors)


class FormulaJSONContentsLoader(FormulaLoader):
    ''' API document which did not come from the API cache (not cached) '''

    def __init__(
        self, ctx: 'Formulary', name: str, doc: dict[str, Any],
    ) -> None:
        super().__init__(ctx, name, '')
        self.doc = doc

    def recipe(
        self, *, flags: 'list[str]|None' = None, ignoreErrors: bool = False,
    ) -> Recipe:
        return self.ctx.materializer.recipeFromJson(self.name, self.doc)


# -----------------------------------
#  Formulary
# -----------------------------------

class Formulary:
    '''
    Entry point. Owns the per-platform cache, the materializer and the
    collaborators (taps, API, dependency graph). Loaders are tried in
    `LOADERS` order, the first claim wins.
    '''
    LOADERS = (
        FromBottleLoader,
        FromURILoader,
        FromAPILoader,
        FromTapLoader,
        FromPathLoader,
        FromNameLoader,
        FromKegLoader,
        FromCacheLoader,
    )  # type: tuple[type[FormulaLoader], ...]

    def __init__(
        self, paths: Paths, *,
        config: 'Config|None' = None,
        system: 'SimulateSystem|None' = None,
        taps: 'Taps|None' = None,
        api: 'ApiSource|None' = None,
        graph: 'DependencyGraph|None' = None,
    ) -> None:
        self.paths = paths
        self.config = config or Config()
        self.system = system or SimulateSystem()
        self.cache = FormulaCache(
            self.system, keepFactory=self.config.FACTORY_CACHE)
        self.materializer = Materializer(
            paths, self.system, self.cache, self.config,
            installed=self._anyVersionInstalled)
        self.api = api or ApiSource(paths, self.config)
        self.taps = taps or Taps(paths, self.api)
        self.graph = graph or DependencyGraph(self)

    @staticmethod
    def fromEnv() -> 'Formulary':
        ''' Use `BREW_PY_PREFIX` and `<prefix>/config.ini` '''
        paths = Paths(Env.PREFIX)
        paths.ensure()
        config = Config.load(os.path.join(Env.PREFIX, 'config.ini'))
        return Formulary(paths, config=config)

    ##################################################
    # Loading
    ##################################################

    def factory(
        self, ref: str, spec: 'str|None' = 'stable', *,
        aliasPath: 'str|None' = None,
        fromWhere: 'str|None' = None,
        warn: bool = False,
        forceBottle: bool = False,
        flags: 'list[str]|None' = None,
        ignoreErrors: bool = False,
        preferStub: bool = False,
    ) -> Formula:
        ''' Load formula. Same arguments return the same instance. '''
        useCache = self.config.FACTORY_CACHE
        cacheKey = f'{ref}-{spec}-{aliasPath}-{fromWhere}-{preferStub}'
        if useCache and (rv := self.cache.get('formulary_factory', cacheKey)):
            return rv  # type: ignore[no-any-return]

        loader = None
        if preferStub:
            loader = FormulaStubLoader.tryClaim(
                self, ref, fromWhere=fromWhere, warn=warn)
        if not loader:
            loader = self.loaderFor(ref, fromWhere=fromWhere, warn=warn)
        formula = loader.materialize(
            spec, aliasPath=aliasPath, forceBottle=forceBottle, flags=flags,
            ignoreErrors=ignoreErrors)
        if useCache:
            self.cache.put('formulary_factory', cacheKey, formula)
        return formula

    def loaderFor(
        self, ref: str, *, fromWhere: 'str|None' = None, warn: bool = True,
    ) -> FormulaLoader:
        ''' First loader which claims `ref` (or `NullLoader`) '''
        for cls in Formulary.LOADERS:
            if loader := cls.tryClaim(self, ref, fromWhere=fromWhere,
                                      warn=warn):
                Log.debug(f'[DEBUG] ({cls.__name__}): loading {ref}')
                return loader
        return NullLoader(self, ref)

    def resolve(
        self, ref: str, spec: 'str|None' = None, *,
        forceBottle: bool = False,
        flags: 'list[str]|None' = None,
        preferStub: bool = False,
    ) -> Formula:
        '''
        Like `factory()` but prefer the installed keg (and its spec) for
        plain names, and attach the install receipt.
        '''
        if '/' in ref or os.path.exists(ref):
            formula = self.factory(ref, spec or 'stable',
                                   forceBottle=forceBottle, flags=flags,
                                   preferStub=preferStub)
            if formula.anyVersionInstalled:
                tab = Tab.forFormula(formula)
                resolvedSpec = spec or tab.spec
                if resolvedSpec and getattr(formula, resolvedSpec, None):
                    formula.activeSpecName = resolvedSpec
                formula.build = tab
        else:
            rack = self.toRack(ref)
            aliasPath = self.factory(
                ref, forceBottle=forceBottle, flags=flags,
                preferStub=preferStub).aliasPath
            formula = self.fromRack(rack, spec, aliasPath=aliasPath,
                                    forceBottle=forceBottle, flags=flags)
        formula.followInstalledAlias = False
        return formula

    def fromRack(
        self, rack: str, spec: 'str|None' = None, *,
        aliasPath: 'str|None' = None,
        forceBottle: bool = False,
        flags: 'list[str]|None' = None,
    ) -> Formula:
        ''' Linked keg, opt-linked keg or newest version. Else by name. '''
        kegs = Keg.allInRack(rack, self.paths)
        keg = next((x for x in kegs if x.linked), None) \
            or next((x for x in kegs if x.optlinked), None) \
            or max(kegs, key=lambda x: x.version.sortKey(), default=None)
        if keg:
            return self.fromKeg(keg, spec, aliasPath=aliasPath,
                                forceBottle=forceBottle, flags=flags)
        return self.factory(os.path.basename(rack), spec or 'stable',
                            aliasPath=aliasPath, fromWhere='rack',
                            forceBottle=forceBottle, flags=flags)

    def fromKeg(
        self, keg: 'Keg', spec: 'str|None' = None, *,
        aliasPath: 'str|None' = None,
        forceBottle: bool = False,
        flags: 'list[str]|None' = None,
    ) -> Formula:
        ''' Load formula of installed keg (tap from receipt, if any) '''
        tab = keg.tab()
        spec = spec or tab.spec
        name = os.path.basename(keg.rack)
        kwargs = dict(aliasPath=aliasPath, fromWhere='keg', warn=False,
                      forceBottle=forceBottle, flags=flags)  # type: Any
        if tab.tap:
            try:
                formula = self.factory(f'{tab.tap}/{name}', spec, **kwargs)
            except FormulaUnavailableError:
                # migrated to a different tap, search everywhere
                formula = self.factory(name, spec, **kwargs)
        else:
            formula = self.factory(name, spec, **kwargs)
        formula.build = tab
        return formula

    def fromContents(
        self, name: str, path: str, contents: str, spec: str = 'stable', *,
        aliasPath: 'str|None' = None,
        flags: 'list[str]|None' = None,
        ignoreErrors: bool = False,
    ) -> Formula:
        ''' Script text which is not (necessarily) on disk '''
        loader = FormulaContentsLoader(self, name, path, contents,
                                       aliasPath=aliasPath)
        return loader.materialize(spec, flags=flags,
                                  ignoreErrors=ignoreErrors)

    def fromJsonContents(
        self, name: str, doc: dict[str, Any], spec: str = 'stable',
    ) -> Formula:
        return FormulaJSONContentsLoader(self, name, doc).materialize(spec)

    def cask(self, token: str) -> Cask:
        ''' Cask from the API index (renames followed) '''
        if not self.config.API_ENABLED:
            raise CaskUnavailableError(token)
        match = re.match(r'^(?:[Hh]omebrew/(?:homebrew-)?cask/)?([\w+\-.@]+)$',
                         token)
        if not match:
            raise CaskUnavailableError(token)
        name = match.group(1).lower()
        name = self.api.caskRenames.get(name, name)
        doc = self.api.cask(name)
        if doc is None:
            raise CaskUnavailableError(token)
        return self.materializer.loadCaskFromJson(
            name, doc, tap=self.taps.fetch(Taps.CORE_CASK),
            sourcefilePath=os.path.join(
                self.paths.apiCache, 'cask', name + '.json'))

    ##################################################
    # Names & paths
    ##################################################

    def toRack(self, ref: str) -> str:
        ''' Returns `@/Cellar/<name>` (existing rack or canonical name) '''
        if '/' in ref:
            self.factory(ref)  # fail early for unknown tap formulae
        rack = self.paths.rack(os.path.basename(ref).removesuffix('.rb'))
        if not os.path.isdir(rack):
            rack = self.paths.rack(self.canonicalName(ref))
        return os.path.realpath(rack) if os.path.islink(rack) else rack

    def canonicalName(self, ref: str) -> str:
        ''' Name after aliases, renames and migrations are resolved '''
        try:
            return self.loaderFor(ref).name
        except TapFormulaAmbiguityError:
            return ref.lower()

    def path(self, ref: str) -> str:
        ''' Formula source file (may not exist) '''
        return self.loaderFor(ref).path

    pathFor = path

    def kegOnly(self, rack: str) -> bool:
        try:
            return bool(self.resolve(os.path.basename(rack)).kegOnly)
        except (FormulaUnavailableError, TapFormulaAmbiguityError):
            return False

    def corePath(self, name: str) -> str:
        return self.findFormulaInTap(name.lower(), self.taps.core)

    @staticmethod
    def findFormulaInTap(name: str, tap: 'Tap') -> str:
        fname = name if name.endswith('.rb') else name + '.rb'
        return tap.formulaFilesByName.get(
            name, os.path.join(tap.formulaDir, fname))

    def tapFormulaNameType(
        self, ref: str, *, warn: bool = False,
        _seen: 'list[str]|None' = None,
    ) -> 'tuple[str, Tap, str|None]|None':
        '''
        Split `user/repo/name` and follow alias, rename or migration tables.
        Returns (name, tap, type) with type "alias", "rename", "migration"
        or `None`.
        '''
        tapWithName = self.taps.withFormulaName(ref)
        if not tapWithName:
            return None
        tap, name = tapWithName
        tappedName = f'{tap}/{name}'
        seen = (_seen or []) + [tappedName]
        kind = None  # type: str|None
        oldName = newName = None  # type: str|None

        aliasKey = name if tap.isCore else tappedName
        if possibleAlias := tap.aliasTable.get(aliasKey):
            name = possibleAlias.split('/')[-1]
            kind = 'alias'
        elif renamed := tap.formulaRenames.get(name):
            oldName = name if tap.isCore else tappedName
            name = renamed
            newName = name if tap.isCore else f'{tap}/{name}'
            kind = 'rename'
        elif newTapName := tap.tapMigrations.get(name):
            newTapWithName = self.taps.withFormulaName(newTapName)
            if newTapWithName:
                newTap, migratedName = newTapWithName
            else:
                newTap, migratedName = self.taps.fetch(newTapName), name
            newTappedName = f'{newTap}/{migratedName}'
            if newTappedName in seen:
                Log.warn(MigrationCycleError(seen + [newTappedName]))
            else:
                oldName = name if tap.isCore else tappedName
                nameTapType = self.tapFormulaNameType(
                    newTappedName, warn=False, _seen=seen)
                if not nameTapType:
                    return None
                name, tap, _ = nameTapType
                newName = name if newTap.isCore else f'{tap}/{name}'
                kind = 'migration'

        if warn and oldName and newName:
            Log.warn(f'Formula {oldName} was renamed to {newName}.')
        return name, tap, kind

    ##################################################
    # Install receipts
    ##################################################

    def tabFor(self, pkg: 'Formula|Cask') -> 'AbstractTab':
        ''' Installed receipt or an (unsaved) empty one '''
        if isinstance(pkg, Cask):
            return CaskTab.forCask(pkg)
        return Tab.forFormula(pkg)

    def createTab(self, pkg: 'Formula|Cask') -> 'AbstractTab':
        ''' Snapshot of a realized install (not written yet) '''
        if isinstance(pkg, Cask):
            return CaskTab.create(pkg, self)
        return Tab.create(pkg, self)

    ##################################################
    # Cache
    ##################################################

    def clearCache(self) -> None:
        ''' Drop materialized definitions (factory results are kept) '''
        with Materializer.LOCK:
            self.cache.clear()
            self.materializer.namespaces.clear()

    def resyncTaps(self) -> None:
        ''' Re-read alias, rename and migration tables '''
        self.taps.resync()
        self.api.resync()
        self.clearCache()

    def _anyVersionInstalled(self, name: str) -> bool:
        return any(os.path.isfile(x.tabfile) for x in
                   Keg.allInRack(self.paths.rack(name), self.paths))


# -----------------------------------
#  Taps
# -----------------------------------

class Tap:
    '''
    Formula repository `@/Library/Taps/<user>/homebrew-<repo>`.
    Lookup tables are cached until `resync()`.
    '''

    def __init__(self, user: str, repo: str, paths: Paths) -> None:
        self.user = user
        self.repo = repo
        self.path = os.path.join(paths.taps, user, 'homebrew-' + repo)

    def __repr__(self) -> str:
        return f'<{type(self).__name__} {self.name}>'

    def __str__(self) -> str:
        return self.name

    @property
    def name(self) -> str:
        return f'{self.user}/{self.repo}'

    @property
    def isCore(self) -> bool:
        return self.name == Taps.CORE

    @property
    def installed(self) -> bool:
        return os.path.isdir(self.path)

    @property
    def formulaDir(self) -> str:
        return os.path.join(self.path, 'Formula')

    @property
    def aliasDir(self) -> str:
        return os.path.join(self.path, 'Aliases')

    @cached_property
    def formulaFilesByName(self) -> dict[str, str]:
        ''' Includes sharded subdirectories, e.g. `Formula/f/foo.rb` '''
        rv = {}  # type: dict[str, str]
        if not os.path.isdir(self.formulaDir):
            return rv
        for root, _, files in os.walk(self.formulaDir):
            for fname in sorted(files):
                if fname.endswith('.rb'):
                    rv.setdefault(fname[:-3], os.path.join(root, fname))
        return rv

    @cached_property
    def aliasTable(self) -> dict[str, str]:
        ''' alias -> name. Keys and values are tap-qualified if not core. '''
        rv = {}  # type: dict[str, str]
        if not os.path.isdir(self.aliasDir):
            return rv
        for link in LinkTarget.allInDir(self.aliasDir):
            alias = os.path.basename(link.path)
            name = os.path.basename(link.target).removesuffix('.rb')
            if self.isCore:
                rv[alias] = name
            else:
                rv[f'{self}/{alias}'] = f'{self}/{name}'
        return rv

    @cached_property
    def formulaRenames(self) -> dict[str, str]:
        return self._readJson('formula_renames.json')

    @cached_property
    def tapMigrations(self) -> dict[str, str]:
        ''' old name -> "user/repo" or "user/repo/newname" '''
        return self._readJson('tap_migrations.json')

    @cached_property
    def caskRenames(self) -> dict[str, str]:
        return self._readJson('cask_renames.json')

    def _readJson(self, fname: str) -> dict[str, str]:
        path = os.path.join(self.path, fname)
        if not os.path.isfile(path):
            return {}
        with open(path) as fp:
            return json.load(fp) or {}  # type: ignore[no-any-return]

    def resync(self) -> None:
        for key in ('formulaFilesByName', 'aliasTable', 'formulaRenames',
                    'tapMigrations', 'caskRenames'):
            self.__dict__.pop(key, None)


class CoreTap(Tap):
    ''' Default tap. If not installed, tables come from the API index. '''

    def __init__(self, user: str, repo: str, paths: Paths,
                 api: 'ApiSource') -> None:
        super().__init__(user, repo, paths)
        self.api = api

    @cached_property
    def aliasTable(self) -> dict[str, str]:
        if self.installed:
            return super().aliasTable
        return dict(self.api.formulaAliases)

    @cached_property
    def formulaRenames(self) -> dict[str, str]:
        if self.installed:
            return super().formulaRenames
        return dict(self.api.formulaRenames)

    @cached_property
    def tapMigrations(self) -> dict[str, str]:
        if self.installed:
            return super().tapMigrations
        return dict(self.api.formulaTapMigrations)


class Taps:
    ''' Enumerates and memoizes `Tap` instances '''
    CORE = 'homebrew/core'
    CORE_CASK = 'homebrew/cask'

    def __init__(self, paths: Paths, api: 'ApiSource') -> None:
        self.paths = paths
        self.api = api
        self._taps = {}  # type: dict[str, Tap]

    def fetch(self, user: str, repo: 'str|None' = None) -> Tap:
        ''' Accepts "user/repo", "user/homebrew-repo" or (user, repo) '''
        if repo is None:
            user, _, repo = user.partition('/')
        if not user or not repo or '/' in repo:
            raise ValueError(f'Invalid tap name "{user}/{repo}"')
        user = user.lower()
        repo = repo.lower().removeprefix('homebrew-')
        name = f'{user}/{repo}'
        if name not in self._taps:
            if name == Taps.CORE:
                self._taps[name] = CoreTap(user, repo, self.paths, self.api)
            else:
                self._taps[name] = Tap(user, repo, self.paths)
        return self._taps[name]

    @property
    def core(self) -> Tap:
        return self.fetch(Taps.CORE)

    def installed(self) -> list[Tap]:
        rv = []
        if not os.path.isdir(self.paths.taps):
            return rv
        for user in sorted(os.listdir(self.paths.taps)):
            userDir = os.path.join(self.paths.taps, user)
            if not os.path.isdir(userDir):
                continue
            for repo in sorted(os.listdir(userDir)):
                if os.path.isdir(os.path.join(userDir, repo)):
                    rv.append(self.fetch(user, repo))
        return rv

    def fromPath(self, path: str) -> 'Tap|None':
        ''' Tap containing `path` (or `None`) '''
        path = os.path.abspath(path)
        if not path.startswith(self.paths.taps + os.sep):
            return None
        parts = os.path.relpath(path, self.paths.taps).split(os.sep)
        if len(parts) < 2:
            return None
        return self.fetch(parts[0], parts[1])

    def withFormulaName(self, ref: str) -> 'tuple[Tap, str]|None':
        ''' "user/repo/name" -> (tap, name) '''
        match = Reference.RX_TAP_NAME.match(ref)
        if not match:
            return None
        user, repo, name = match.groups()
        return self.fetch(user, repo), name.lower()

    def resync(self) -> None:
        for tap in self._taps.values():
            tap.resync()


# -----------------------------------
#  API
# -----------------------------------

class ApiSource:
    '''
    Prefetched JSON API files in `@/cache/api`. Downloading them is not
    part of this module.
    '''

    def __init__(self, paths: Paths, config: Config) -> None:
        self.paths = paths
        self.config = config

    def _load(self, fname: str, default: Any) -> Any:
        path = os.path.join(self.paths.apiCache, fname)
        if not os.path.isfile(path):
            return default
        with open(path) as fp:
            return json.load(fp)

    @staticmethod
    def _byKey(data: Any, key: str) -> dict[str, dict[str, Any]]:
        if isinstance(data, dict):
            return data
        return {x[key]: x for x in data or []}

    @cached_property
    def formulae(self) -> dict[str, dict[str, Any]]:
        ''' name -> API document '''
        return self._byKey(self._load('formula.json', []), 'name')

    @cached_property
    def formulaAliases(self) -> dict[str, str]:
        return {alias: name for name, doc in self.formulae.items()
                for alias in doc.get('aliases') or []}

    @cached_property
    def formulaRenames(self) -> dict[str, str]:
        return self._load('formula_renames.json', {})  # type: ignore

    @cached_property
    def formulaTapMigrations(self) -> dict[str, str]:
        return self._load('formula_tap_migrations.json', {})  # type: ignore

    @cached_property
    def casks(self) -> dict[str, dict[str, Any]]:
        ''' token -> API document '''
        return self._byKey(self._load('cask.json', []), 'token')

    @cached_property
    def caskRenames(self) -> dict[str, str]:
        return self._load('cask_renames.json', {})  # type: ignore

    def formula(self, name: str) -> 'dict[str, Any]|None':
        return self.formulae.get(name)

    def cask(self, token: str) -> 'dict[str, Any]|None':
        return self.casks.get(token)

    def formulaStub(self, name: str, bottleTag: str) -> 'FormulaStub|None':
        '''
        Entry of `internal/packages.<tag>.json`:
        `{"formulae": {name: [pkg_version, rebuild, sha256]}}`
        '''
        data = self._load(f'internal/packages.{bottleTag}.json', {})
        entry = (data.get('formulae') or {}).get(name)
        if not entry:
            return None
        if isinstance(entry, dict):
            entry = [entry.get('pkg_version'), entry.get('rebuild'),
                     entry.get('sha256')]
        pkgVersion, rebuild, sha256 = (list(entry) + [None, None])[:3]
        return FormulaStub(name, PkgVersion.parse(str(pkgVersion)),
                           int(rebuild or 0), sha256)

    def resync(self) -> None:
        for key in ('formulae', 'formulaAliases', 'formulaRenames',
                    'formulaTapMigrations', 'casks', 'caskRenames'):
            self.__dict__.pop(key, None)


class Curl:
    @staticmethod
    def download(url: str, path: str) -> str:
        '''
        Download raw data to file. Creates an intermediate ".inprogress" file.
        '''
        os.makedirs(os.path.dirname(path), exist_ok=True)
        tmp_file = path + '.inprogress'
        try:
            Req.urlretrieve(url, tmp_file)
        except (URLError, OSError) as e:
            raise FormulaUnavailableError(
                os.path.basename(path).removesuffix('.rb')) from e
        os.rename(tmp_file, path)  # atomic download, no broken files
        return path


# -----------------------------------
#  Kegs & bottles
# -----------------------------------

class LinkTarget(NamedTuple):
    path: str
    target: str  # absolute path
    raw: str = ''  # relative target

    @staticmethod
    def read(filePath: str) -> 'LinkTarget|None':
        ''' Read a single symlink and populate with absolute paths '''
        if not os.path.islink(filePath):
            return None
        raw = os.readlink(filePath)
        real = os.path.realpath(os.path.join(os.path.dirname(filePath), raw))
        return LinkTarget(filePath, real, raw)

    @staticmethod
    def allInDir(path: str) -> 'list[LinkTarget]':
        return [x for f in sorted(os.scandir(path), key=lambda x: x.name)
                if (x := LinkTarget.read(f.path))]


class Keg:
    ''' Installed version `@/Cellar/<name>/<pkg-version>` '''

    def __init__(self, path: str, paths: Paths) -> None:
        self.path = path
        self.paths = paths

    def __repr__(self) -> str:
        return f'<Keg {self.name} {self.version}>'

    @staticmethod
    def allInRack(rack: str, paths: Paths) -> 'list[Keg]':
        if not os.path.isdir(rack):
            return []
        return [Keg(x.path, paths) for x in sorted(
            os.scandir(rack), key=lambda x: x.name)
            if x.is_dir() and not x.name.startswith('.')]

    @property
    def rack(self) -> str:
        return os.path.dirname(self.path)

    @property
    def name(self) -> str:
        return os.path.basename(self.rack)

    @cached_property
    def version(self) -> PkgVersion:
        return PkgVersion.parse(os.path.basename(self.path))

    @property
    def tabfile(self) -> str:
        return os.path.join(self.path, AbstractTab.FILENAME)

    def _linksHere(self, linkPath: str) -> bool:
        link = LinkTarget.read(linkPath)
        return bool(link and link.target == os.path.realpath(self.path))

    @property
    def linked(self) -> bool:
        ''' `@/var/homebrew/linked/<name>` points to this keg '''
        return self._linksHere(os.path.join(self.paths.linkedKegs, self.name))

    @property
    def optlinked(self) -> bool:
        ''' `@/opt/<name>` points to this keg '''
        return self._linksHere(os.path.join(self.paths.opt, self.name))

    def tab(self) -> 'Tab':
        ''' Receipt of this keg (empty if missing, but with tabfile) '''
        if os.path.isfile(self.tabfile):
            return Tab.fromFile(self.tabfile)
        tab = Tab.empty()
        tab.tabfile = self.tabfile
        return tab


class BottleArchive:
    ''' Local bottle `<name>--<version>.<tag>.bottle[.<rebuild>].tar.gz` '''

    def __init__(self, path: str) -> None:
        self.path = path

    def members(self) -> list[str]:
        with openTarfile(self.path, 'r:gz') as tar:
            return tar.getnames()

    def read(self, member: str) -> str:
        with openTarfile(self.path, 'r:gz') as tar:
            fp = tar.extractfile(member)
            if fp is None:
                raise TarError(f'{member} is not a regular file')
            with fp:
                return fp.read().decode('utf8')

    def names(self) -> tuple[str, str]:
        ''' (name, full name). Tap is read from the embedded receipt. '''
        members = self.members()
        if not members:
            raise TarError(f'empty bottle archive {self.path}')
        name = members[0].lstrip('./').split('/')[0]
        fullName = name
        receipt = next((x for x in members if x.count('/') == 2
                        and x.endswith('/' + AbstractTab.FILENAME)), None)
        if receipt:
            tap = Tab.fromDict(json.loads(self.read(receipt))).tap
            if tap and tap.lower() != Taps.CORE:
                fullName = f'{tap}/{name}'
        return name, fullName

    def formulaContents(self, name: str) -> str:
        ''' Script file `<name>/<version>/.brew/<name>.rb` '''
        rx = re.compile(
            rf'^{re.escape(name)}/[^/]+/\.brew/{re.escape(name)}\.rb$')
        member = next((x for x in self.members() if rx.match(x)), None)
        if not member:
            raise BottleFormulaUnavailableError(
                self.path, f'{name}/<version>/.brew/{name}.rb')
        return self.read(member)


# -----------------------------------
#  Dependency graph
# -----------------------------------

class DependencyGraph:
    '''
    Runtime dependency closure of a formula or cask. Dependencies come
    before their dependents. Build, test and optional kinds are skipped.
    '''

    def __init__(self, formulary: Formulary) -> None:
        self.formulary = formulary

    def runtime(self, node: 'Formula|Cask') -> 'list[Formula|Cask]':
        rv = []  # type: list[Formula|Cask]
        self._visit(node, set([DependencyGraph.key(node)]), rv)
        return rv

    def _visit(
        self, node: 'Formula|Cask', seen: set[str], rv: 'list[Formula|Cask]'
    ) -> None:
        for dep in self.edges(node):
            key = DependencyGraph.key(dep)
            if key in seen:
                continue  # visited or cyclic
            seen.add(key)
            self._visit(dep, seen, rv)
            rv.append(dep)

    def edges(self, node: 'Formula|Cask') -> 'list[Formula|Cask]':
        ''' Direct runtime dependencies (unavailable ones are skipped) '''
        if isinstance(node, Cask):
            refs = [('cask', x) for x in node.dependsOn.get('cask') or []]
            refs += [('formula', x)
                     for x in node.dependsOn.get('formula') or []]
        else:
            refs = [('formula', x.name) for x in node.runtimeDependencies]

        rv = []  # type: list[Formula|Cask]
        for kind, name in refs:
            try:
                if kind == 'cask':
                    rv.append(self.formulary.cask(name))
                else:
                    rv.append(self.formulary.factory(name))
            except (FormulaUnavailableError, CaskUnavailableError) as e:
                Log.warn(f'{DependencyGraph.key(node)}: skipping dependency',
                         name, f'({e})')
        return rv

    @staticmethod
    def key(node: 'Formula|Cask') -> str:
        if isinstance(node, Cask):
            return 'cask:' + node.fullName
        return 'formula:' + node.fullName


# -----------------------------------
#  Install receipt (Tab)
# -----------------------------------

class AbstractTab:
    '''
    Install receipt `INSTALL_RECEIPT.json`. Reading is lenient: unknown keys
    are dropped, missing (or null) keys get their default.
    '''
    FILENAME = 'INSTALL_RECEIPT.json'

    def __init__(
        self, data: 'dict[str, Any]|None' = None, tabfile: 'str|None' = None,
    ) -> None:
        self.tabfile = tabfile
        self.data = AbstractTab._merge(self.defaults(), data or {})

    def __repr__(self) -> str:
        return f'<{type(self).__name__} {self.tabfile}>'

    @staticmethod
    def _merge(into: dict[str, Any], data: dict[str, Any]) -> dict[str, Any]:
        for key, value in data.items():
            if key not in into or value is None:
                continue
            if isinstance(into[key], dict) and isinstance(value, dict):
                AbstractTab._merge(into[key], value)
            else:
                into[key] = value
        return into

    @classmethod
    def defaults(cls) -> dict[str, Any]:
        return {
            'homebrew_version': VERSION,
            'loaded_from_api': False,
            'installed_as_dependency': False,
            'installed_on_request': False,
            'time': None,
            'arch': None,
            'built_on': None,
            'runtime_dependencies': None,
            'source': {'path': None, 'tap': None, 'tap_git_head': None},
        }

    @classmethod
    def empty(cls) -> 'Any':
        ''' Default receipt without tabfile (never written) '''
        return cls()

    @classmethod
    def fromDict(
        cls, data: dict[str, Any], tabfile: 'str|None' = None,
    ) -> 'Any':
        return cls(data, tabfile)

    @classmethod
    def fromFile(cls, path: str) -> 'Any':
        with open(path) as fp:
            try:
                data = json.load(fp)
            except ValueError as e:
                raise FormulaError(f'Cannot parse {path}: {e}') from e
        return cls.fromDict(data if isinstance(data, dict) else {}, path)

    # Properties

    @property
    def source(self) -> dict[str, Any]:
        return self.data['source']  # type: ignore[no-any-return]

    @property
    def tap(self) -> 'str|None':
        return self.source.get('tap')

    @property
    def spec(self) -> 'str|None':
        return self.source.get('spec')

    @property
    def time(self) -> 'int|None':
        return self.data['time']  # type: ignore[no-any-return]

    @property
    def loadedFromApi(self) -> bool:
        return bool(self.data['loaded_from_api'])

    @property
    def installedAsDependency(self) -> bool:
        return bool(self.data['installed_as_dependency'])

    @property
    def installedOnRequest(self) -> bool:
        return bool(self.data['installed_on_request'])

    @property
    def runtimeDependencies(self) -> Any:
        return self.data['runtime_dependencies']

    # Output

    def toDict(self) -> dict[str, Any]:
        return json.loads(json.dumps(self.data))  # type: ignore

    def toJson(self, indent: 'int|None' = None) -> str:
        return json.dumps(self.data, indent=indent)

    def write(self) -> None:
        ''' Atomic write to `tabfile` '''
        if not self.tabfile:
            raise FormulaError('Will not write receipt without a tabfile')
        tmp_file = self.tabfile + '.inprogress'
        with open(tmp_file, 'w') as fp:
            fp.write(self.toJson())
        os.rename(tmp_file, self.tabfile)

    def __str__(self) -> str:
        rv = ['Installed']
        if self.installedAsDependency:
            rv.append('as dependency')
        if self.loadedFromApi:
            rv.append('using the formulae.brew.sh API')
        if self.time:
            rv.append(datetime.fromtimestamp(self.time).strftime(
                'on %Y-%m-%d at %H:%M:%S'))
        return ' '.join(rv)

    @staticmethod
    def _generic(loadedFromApi: bool, system: Platform) -> dict[str, Any]:
        arch = 'arm64' if system.isArm else 'x86_64'
        return {
            'homebrew_version': VERSION,
            'installed_as_dependency': False,
            'installed_on_request': False,
            'loaded_from_api': loadedFromApi,
            'time': int(datetime.now().timestamp()),
            'arch': arch,
            'built_on': {
                'os': system.os,
                'os_version': system.osName or system.osVersion,
                'arch': arch,
            },
        }


class Tab(AbstractTab):
    ''' Receipt of an installed formula keg '''
    LEGACY_CORE_TAPS = ('mxcl/master', 'Homebrew/homebrew', 'homebrew/homebrew')

    @classmethod
    def defaults(cls) -> dict[str, Any]:
        rv = super().defaults()
        rv.update({
            'used_options': [],
            'unused_options': [],
            'built_as_bottle': False,
            'poured_from_bottle': False,
            'source_modified_time': 0,
            'compiler': 'clang',
            'aliases': [],
        })
        rv['source'].update({
            'spec': 'stable',
            'versions': {'stable': None, 'head': None, 'version_scheme': 0},
        })
        return rv

    @classmethod
    def fromDict(
        cls, data: dict[str, Any], tabfile: 'str|None' = None,
    ) -> 'Tab':
        tab = cls(data, tabfile)
        tappedFrom = data.get('tapped_from')
        if tappedFrom and tappedFrom != 'path or URL' and not tab.tap:
            tab.source['tap'] = tappedFrom
        if tab.tap in Tab.LEGACY_CORE_TAPS:
            tab.source['tap'] = Taps.CORE
        if not (data.get('source') or {}).get('spec') and tabfile:
            version = PkgVersion.parse(
                os.path.basename(os.path.dirname(tabfile)))
            tab.source['spec'] = 'head' if version.version.isHead \
                else 'stable'
        return tab

    @staticmethod
    def forFormula(formula: Formula) -> 'Tab':
        ''' Receipt of opt-linked, linked, only or newest keg (or empty) '''
        candidates = []
        for link in (formula.optPrefix,
                     os.path.join(formula.paths.linkedKegs, formula.name)):
            if os.path.islink(link) and os.path.isdir(link):
                candidates.append(os.path.realpath(link))
        kegs = formula.installedKegs
        if len(kegs) == 1:
            candidates.append(kegs[0].path)
        if kegs:
            candidates.append(max(kegs, key=lambda x: x.version.sortKey()).path)

        for path in candidates:
            tabfile = os.path.join(path, Tab.FILENAME)
            if os.path.isfile(tabfile):
                return Tab.fromFile(tabfile)

        # not installed, fake receipt
        tab = Tab.empty()  # type: Tab
        tab.data['unused_options'] = [f'--{x.name}' for x in formula.options]
        tab.data['source'] = Tab.sourceOf(formula)
        return tab

    @staticmethod
    def create(formula: Formula, formulary: Formulary) -> 'Tab':
        ''' Snapshot for `formula.prefix` (call `write()` to persist) '''
        system = formulary.system.current
        opts = BuildOptions(formula.flags, formula.options)
        deps = formulary.graph.runtime(formula)
        data = Tab._generic(formula.loadedFromApi, system)
        data.update({
            'used_options': opts.usedOptions,
            'unused_options': opts.unusedOptions,
            'built_as_bottle': opts.bottle,
            'poured_from_bottle': bool(formula.localBottlePath),
            'source_modified_time': int(os.path.getmtime(formula.path))
            if os.path.isfile(formula.path) else 0,
            'compiler': 'clang' if system.isMac else 'gcc',
            'aliases': formula.aliases,
            'runtime_dependencies': Tab.runtimeDepsHash(formula, deps),
            'source': Tab.sourceOf(formula),
        })
        return Tab(data, os.path.join(formula.prefix, Tab.FILENAME))

    @staticmethod
    def sourceOf(formula: Formula) -> dict[str, Any]:
        stable, head = formula.stable, formula.head
        return {
            'path': formula.aliasPath or formula.path,
            'tap': str(formula.tap) if formula.tap else None,
            'tap_git_head': formula.tapGitHead,
            'spec': formula.activeSpecName or 'stable',
            'versions': {
                'stable': str(stable.version) if stable else None,
                'head': str(head.version) if head else None,
                'version_scheme': formula.versionScheme,
            },
        }

    @staticmethod
    def runtimeDepsHash(
        formula: Formula, deps: 'list[Formula|Cask]',
    ) -> list[dict[str, Any]]:
        declared = [x.name for x in formula.dependencies]
        return [Tab.formulaToDepHash(x, declared)
                for x in deps if isinstance(x, Formula)]

    @staticmethod
    def formulaToDepHash(
        formula: Formula, declared: list[str],
    ) -> dict[str, Any]:
        bottle = formula.bottle
        return {
            'full_name': formula.fullName,
            'version': str(formula.version),
            'revision': formula.revision,
            'bottle_rebuild': bottle.rebuild if bottle else None,
            'pkg_version': str(formula.pkgVersion),
            'declared_directly': formula.fullName in declared,
        }

    @property
    def usedOptions(self) -> list[str]:
        return list(self.data['used_options'])

    @property
    def unusedOptions(self) -> list[str]:
        return list(self.data['unused_options'])

    @property
    def pouredFromBottle(self) -> bool:
        return bool(self.data['poured_from_bottle'])


class CaskTab(AbstractTab):
    ''' Receipt of an installed cask `@/Caskroom/<token>/.metadata` '''

    @classmethod
    def defaults(cls) -> dict[str, Any]:
        rv = super().defaults()
        rv.update({
            'uninstall_flight_blocks': False,
            'uninstall_artifacts': [],
        })
        rv['source']['version'] = None
        return rv

    @staticmethod
    def forCask(cask: Cask) -> 'CaskTab':
        ''' Installed receipt or one with only `source` and artifacts '''
        path = os.path.join(cask.metadataMainContainerPath, CaskTab.FILENAME)
        if os.path.isfile(path):
            return CaskTab.fromFile(path)  # type: ignore[no-any-return]
        tab = CaskTab.empty()  # type: CaskTab
        tab.data['source'] = CaskTab.sourceOf(cask)
        tab.data['uninstall_artifacts'] = cask.artifactsList(
            uninstallOnly=True)
        return tab

    @staticmethod
    def create(cask: Cask, formulary: Formulary) -> 'CaskTab':
        data = CaskTab._generic(True, formulary.system.current)
        data.update({
            'uninstall_flight_blocks': cask.uninstallFlightBlocks,
            'runtime_dependencies': CaskTab.runtimeDepsHash(
                cask, formulary.graph.runtime(cask)),
            'source': CaskTab.sourceOf(cask),
            'uninstall_artifacts': cask.artifactsList(uninstallOnly=True),
        })
        return CaskTab(data, os.path.join(
            cask.metadataMainContainerPath, CaskTab.FILENAME))

    @staticmethod
    def sourceOf(cask: Cask) -> dict[str, Any]:
        return {
            'path': cask.sourcefilePath,
            'tap': str(cask.tap) if cask.tap else None,
            'tap_git_head': cask.tapGitHead,
            'version': cask.version,
        }

    @staticmethod
    def runtimeDepsHash(
        cask: Cask, deps: 'list[Formula|Cask]',
    ) -> dict[str, list[dict[str, Any]]]:
        ''' Split into "cask" and "formula" (keys only if non-empty) '''
        rv = {}  # type: dict[str, list[dict[str, Any]]]
        casks = [x for x in deps if isinstance(x, Cask)]
        formulae = [x for x in deps if isinstance(x, Formula)]
        if casks:
            declared = cask.dependsOn.get('cask') or []
            rv['cask'] = [{
                'full_name': x.fullName,
                'version': x.version,
                'declared_directly': x.fullName in declared,
            } for x in casks]
        if formulae:
            declared = cask.dependsOn.get('formula') or []
            rv['formula'] = [Tab.formulaToDepHash(x, declared)
                             for x in formulae]
        return rv

    @property
    def uninstallFlightBlocks(self) -> bool:
        return bool(self.data['uninstall_flight_blocks'])

    @property
    def uninstallArtifacts(self) -> list[dict[str, Any]]:
        return list(self.data['uninstall_artifacts'])

    def __str__(self) -> str:
        rv = ['Installed']
        if self.loadedFromApi:
            rv.append('using the formulae.brew.sh API')
        if self.time:
            rv.append(datetime.fromtimestamp(self.time).strftime(
                'on %Y-%m-%d at %H:%M:%S'))
        return ' '.join(rv)


# -----------------------------------
#  Build options
# -----------------------------------

class BuildOptions:
    ''' Build flags (e.g. "--with-foo", "--HEAD") vs. declared options '''

    def __init__(self, args: 'list[str]|None', options: list[Option]):
        self.args = list(args or [])
        self.options = options

    def _has(self, name: str) -> bool:
        return f'--{name}' in self.args

    def _defined(self, name: str) -> bool:
        return any(x.name == name for x in self.options)

    def buildWith(self, name: str) -> bool:
        if self._defined(f'with-{name}'):
            return self._has(f'with-{name}')
        if self._defined(f'without-{name}'):
            return not self._has(f'without-{name}')
        return False

    def buildWithout(self, name: str) -> bool:
        return not self.buildWith(name)

    @property
    def head(self) -> bool:
        return self._has('HEAD')

    @property
    def stable(self) -> bool:
        return not self.head

    @property
    def bottle(self) -> bool:
        return self._has('build-bottle')

    @property
    def usedOptions(self) -> list[str]:
        return [f'--{x.name}' for x in self.options if self._has(x.name)]

    @property
    def unusedOptions(self) -> list[str]:
        return [f'--{x.name}' for x in self.options if not self._has(x.name)]


# -----------------------------------
#  Misc
# -----------------------------------

class Txt:
    ''' They all return strings '''
    @staticmethod
    def prettyList(arr: list[str], prefix: str = '  - ') -> str:
        ''' Join list of items with newline and prepend `prefix` '''
        return '\n'.join(prefix + x for x in arr)


class Utils:
    @staticmethod
    def cmpVersion(left: Any, op: str, right: Any) -> bool:
        '''Convert `op` string to operation (<=, >=, <, >, ==, !=)'''
        if op == '<=':
            return bool(left <= right)
        if op == '>=':
            return bool(left >= right)
        if op == '<':
            return bool(left < right)
        if op == '>':
            return bool(left > right)
        if op == '==':
            return bool(left == right)
        if op == '!=':
            return bool(left != right)
        raise ArithmeticError(f'unknown op "{op}"')

    @staticmethod
    def versionList(value: str) -> list[int]:
        ''' "10.15.7" -> [10, 15, 7] (non-numeric parts are dropped) '''
        return [int(x) for x in re.findall(r'\d+', str(value))] or [0]


# -----------------------------------
#  Shell interface
# -----------------------------------

class Bash:
    @staticmethod
    def getVersion(cmd: list[str], pattern: str) -> list[int]:
        ''' Run `cmd` and match `pattern` (should include 1 matching group) '''
        try:
            rv = shell.run(cmd, capture_output=True)
            if match := re.search(pattern.encode('utf8'),
                                  rv.stdout + rv.stderr):
                return [int(x) for x in match.group(1).split(b'.') if x]
        except OSError:
            pass
        return [0]


# -----------------------------------
#  Logger
# -----------------------------------

class Log:
    LEVEL = 2  # 0: error, 1: warn, 2: info, 3: debug
    _SUMMARY = None  # type: StringIO|None

    @staticmethod
    def _log(lvl: int, *msg: Any, summary: bool = False, **kwargs: Any) -> None:
        if Log.LEVEL >= lvl:
            print(*msg, **kwargs)
        if summary and Log._SUMMARY:
            kwargs['file'] = Log._SUMMARY
            print(*msg, **kwargs)

    @staticmethod
    def error(*msg: Any, **kwargs: Any) -> None:
        start = '\033[31m' if Env.IS_TTY else ''
        end = '\033[0m' if Env.IS_TTY else ''
        kwargs['file'] = sys.stderr
        Log._log(0, f'{start}ERROR:', *msg, end, **kwargs)

    @staticmethod
    def main(*msg: Any, **kwargs: Any) -> None:
        Log._log(0, *msg, **kwargs)

    @staticmethod
    def warn(*msg: Any, **kwargs: Any) -> None:
        kwargs.setdefault('file', sys.stderr)
        Log._log(1, '[WARN]', *msg, **kwargs)

    @staticmethod
    def info(*msg: Any, **kwargs: Any) -> None:
        Log._log(2, *msg, **kwargs)

    @staticmethod
    def debug(*msg: Any, **kwargs: Any) -> None:
        Log._log(3, *msg, **kwargs)

    # log summary

    @staticmethod
    def beginErrorSummary() -> None:
        assert not Log._SUMMARY, 'summary already running'
        Log._SUMMARY = StringIO()

    @staticmethod
    def dumpErrorSummary() -> None:
        if Log._SUMMARY:
            if Log._SUMMARY.tell():
                print()
                print('Error summary:')
                print(Log._SUMMARY.getvalue(), end='')  # no double-\n
            Log._SUMMARY.close()
            Log._SUMMARY = None


if __name__ == '__main__':
    main()
