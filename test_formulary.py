#!/usr/bin/env python3
import io
import json
import os
import sys
import tarfile
from typing import Any

import pytest

from formulary import (
    AbstractTab, BottleArchive, Cask, CaskTab, Config, DependencyGraph,
    DevelopmentTools, Env, FormulaCache, FormulaClassUnavailableError,
    FormulaError, FormulaSpecificationError, FormulaUnavailableError,
    FormulaUnreadableError, Formulary, FromAPILoader, FromBottleLoader,
    FromNameLoader, FromTapLoader, Log, Materializer, NullLoader, Paths,
    Platform, Reference, Service, SimulateSystem, Tab,
    TapFormulaAmbiguityError, TapFormulaUnavailableError,
    UnsupportedInstallationMethodError, UnsupportedMethodError, main,
)

Log.LEVEL = 1  # warnings only (on stderr)
DevelopmentTools._SOFTWARE_VERSIONS = {
    'xcode': [0],
    'gcc': [0],
    'clang': [0],
}

SONOMA_ARM = Platform('macos', 'arm', '14')

FOO_RB = '''
class Foo < Formula
  desc "Foo tool"
  homepage "https://example.com/foo"
  url "https://example.com/foo-1.2.tar.gz"
  sha256 "0123456789abcdef"
  license "MIT"

  option "with-extra", "Build with extra support"

  depends_on "bar"
  depends_on "cmake" => :build
  depends_on "extra" if build.with? "extra"
  uses_from_macos "zlib"
  uses_from_macos "curl", since: :sonoma

  on_linux do
    depends_on "linux-only"
  end

  on_arm do
    depends_on "arm-only"
  end

  def install
    system "make", "install"
  end
end
'''

MINIMAL_DOC = {
    'name': 'foo',
    'homepage': 'h',
    'license': 'MIT',
    'versions': {'stable': '1.0'},
    'urls': {'stable': {'url': 'file:///x/foo-1.0.tar', 'checksum': None}},
}


# -----------------------------------
#  Helper
# -----------------------------------

def makeFormulary(
    tmp_path: Any, platform: Platform = SONOMA_ARM, **config: Any
) -> Formulary:
    config.setdefault('API_ENABLED', False)
    paths = Paths(str(tmp_path / 'prefix'))
    paths.ensure()
    return Formulary(paths, config=Config(**config),
                     system=SimulateSystem(platform))


def writeFile(path: str, content: str) -> str:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'w') as fp:
        fp.write(content)
    return path


def writeTap(
    formulary: Formulary, name: str, formulae: 'dict[str, str]', *,
    aliases: 'dict[str, str]|None' = None,
    renames: 'dict[str, str]|None' = None,
    migrations: 'dict[str, str]|None' = None,
) -> str:
    user, repo = name.split('/')
    root = os.path.join(formulary.paths.taps, user, 'homebrew-' + repo)
    os.makedirs(os.path.join(root, 'Formula'), exist_ok=True)
    for fname, content in formulae.items():
        writeFile(os.path.join(root, 'Formula', fname + '.rb'), content)
    for alias, target in (aliases or {}).items():
        os.makedirs(os.path.join(root, 'Aliases'), exist_ok=True)
        os.symlink(os.path.join('..', 'Formula', target + '.rb'),
                   os.path.join(root, 'Aliases', alias))
    for fname, table in (('formula_renames.json', renames),
                         ('tap_migrations.json', migrations)):
        if table:
            writeFile(os.path.join(root, fname), json.dumps(table))
    formulary.resyncTaps()
    return root


def writeApi(formulary: Formulary, fname: str, data: Any) -> None:
    writeFile(os.path.join(formulary.paths.apiCache, fname), json.dumps(data))
    formulary.api.resync()


def script(name: str, body: str = '') -> str:
    cls = Materializer.className(name)
    return f'''
class {cls} < Formula
  url "https://example.com/{name}-1.0.tar.gz"
{body}
end
'''


def writeKeg(
    formulary: Formulary, name: str, version: str,
    receipt: 'dict[str, Any]|None' = None,
) -> str:
    path = os.path.join(formulary.paths.cellar, name, version)
    os.makedirs(path, exist_ok=True)
    writeFile(os.path.join(path, AbstractTab.FILENAME),
              json.dumps(receipt or {}))
    return path


def makeBottle(path: str, members: 'dict[str, str]') -> str:
    with tarfile.open(path, 'w:gz') as tar:
        for name, content in members.items():
            data = content.encode('utf8')
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return path


# -----------------------------------
#  Reference & names
# -----------------------------------

def testClassify(tmp_path: Any) -> None:
    paths = Paths(str(tmp_path))
    assert Reference.classify('foo', paths) == 'name'
    assert Reference.classify('foo@1.2', paths) == 'name'
    assert Reference.classify('user/repo/foo', paths) == 'tap'
    assert Reference.classify('https://x.org/foo.rb', paths) == 'uri'
    assert Reference.classify('file:///tmp/foo.rb', paths) == 'uri'
    assert Reference.classify(
        'foo--1.0.arm64_sonoma.bottle.tar.gz', paths) == 'bottle'
    assert Reference.classify(
        'foo--1.0.arm64_sonoma.bottle.1.tar.gz', paths) == 'bottle'
    assert Reference.classify('./foo.rb', paths) == 'path'
    assert Reference.classify(
        os.path.join(paths.formulaCache, 'foo.rb'), paths) == 'cache'
    assert Reference.classify(
        os.path.join(paths.cellar, 'foo', '1.0'), paths) == 'keg'


def testClassName() -> None:
    assert Materializer.className('foo') == 'Foo'
    assert Materializer.className('foo-bar') == 'FooBar'
    assert Materializer.className('foo_bar.baz') == 'FooBarBaz'
    assert Materializer.className('gtk+3') == 'Gtkx3'
    assert Materializer.className('python@3.12') == 'PythonAT312'


def testCanonicalNameIdempotent(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path)
    writeTap(formulary, 'user/tools', {'foo': script('foo')},
             aliases={'fooalias': 'foo'}, renames={'oldfoo': 'foo'})
    for ref in ('user/tools/foo', 'user/tools/fooalias', 'user/tools/oldfoo'):
        canonical = formulary.canonicalName(ref)
        assert canonical == 'foo'
        assert formulary.canonicalName(canonical) == canonical
        qualified = f'user/tools/{canonical}'
        assert formulary.canonicalName(qualified) == canonical


def testAliasPath(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path)
    root = writeTap(formulary, 'user/tools', {'foo': script('foo')},
                    aliases={'fooalias': 'foo'})
    f = formulary.factory('user/tools/fooalias')
    assert f.name == 'foo'
    assert f.fullName == 'user/tools/foo'
    assert f.aliasPath == os.path.join(root, 'Aliases', 'fooalias')


def testRenameWarning(tmp_path: Any, capsys: Any) -> None:
    formulary = makeFormulary(tmp_path)
    writeTap(formulary, 'user/tools', {'foo': script('foo')},
             renames={'oldfoo': 'foo'})
    loader = formulary.loaderFor('user/tools/oldfoo')
    assert isinstance(loader, FromTapLoader)
    assert loader.name == 'foo'
    err = capsys.readouterr().err
    assert 'Formula user/tools/oldfoo was renamed to user/tools/foo.' in err


def testMigrationCycle(tmp_path: Any, capsys: Any) -> None:
    formulary = makeFormulary(tmp_path)
    writeTap(formulary, 'a/one', {}, migrations={'foo': 'b/two'})
    writeTap(formulary, 'b/two', {}, migrations={'foo': 'a/one'})
    name, tap, kind = formulary.tapFormulaNameType('a/one/foo')
    assert name == 'foo'
    assert kind == 'migration'
    err = capsys.readouterr().err
    assert 'Tap migration cycle a/one/foo -> b/two/foo -> a/one/foo' in err
    # loading terminates with a typed error instead of recursing
    with pytest.raises(TapFormulaUnavailableError):
        formulary.factory('a/one/foo')


def testMigrationCycleAcrossThreeTaps(tmp_path: Any, capsys: Any) -> None:
    formulary = makeFormulary(tmp_path)
    writeTap(formulary, 'a/one', {}, migrations={'foo': 'b/two'})
    writeTap(formulary, 'b/two', {}, migrations={'foo': 'c/three'})
    writeTap(formulary, 'c/three', {}, migrations={'foo': 'a/one'})
    name, tap, kind = formulary.tapFormulaNameType('a/one/foo')
    assert (name, str(tap), kind) == ('foo', 'c/three', 'migration')
    err = capsys.readouterr().err
    assert 'Tap migration cycle a/one/foo -> b/two/foo -> c/three/foo ' \
        '-> a/one/foo' in err
    with pytest.raises(TapFormulaUnavailableError):
        formulary.factory('b/two/foo')


def testMigrationToItself(tmp_path: Any, capsys: Any) -> None:
    formulary = makeFormulary(tmp_path)
    writeTap(formulary, 'a/one', {'foo': script('foo')},
             migrations={'foo': 'a/one'})
    name, tap, kind = formulary.tapFormulaNameType('a/one/foo')
    assert (name, str(tap), kind) == ('foo', 'a/one', None)
    assert 'points to itself' in capsys.readouterr().err


def testMigrationIntoCoreUsesApi(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path, API_ENABLED=True)
    writeApi(formulary, 'formula.json', [MINIMAL_DOC])
    writeTap(formulary, 'user/tools', {}, migrations={'foo': 'homebrew/core'})
    loader = formulary.loaderFor('user/tools/foo')
    assert isinstance(loader, FromAPILoader)
    assert formulary.factory('user/tools/foo').provenance == 'api'


# -----------------------------------
#  Name search across taps
# -----------------------------------

def testSingleTap(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path)
    writeTap(formulary, 'x/one', {'foo': script('foo')})
    loader = formulary.loaderFor('foo')
    assert isinstance(loader, FromNameLoader)
    assert formulary.factory('foo').fullName == 'x/one/foo'


def testAmbiguousTaps(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path)
    writeTap(formulary, 'x/one', {'foo': script('foo')})
    writeTap(formulary, 'y/two', {'foo': script('foo')})
    with pytest.raises(TapFormulaAmbiguityError) as err:
        formulary.factory('foo')
    assert err.value.formulae == ['x/one/foo', 'y/two/foo']
    assert 'x/one/foo' in str(err.value)


def testSymlinkedTapsAreNotAmbiguous(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path)
    root = writeTap(formulary, 'x/one', {'foo': script('foo')})
    other = writeTap(formulary, 'y/two', {})
    os.symlink(os.path.join(root, 'Formula', 'foo.rb'),
               os.path.join(other, 'Formula', 'foo.rb'))
    formulary.resyncTaps()
    assert formulary.factory('foo').name == 'foo'


def testDefaultTapWins(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path)
    writeTap(formulary, 'x/one', {'foo': script('foo')})
    writeTap(formulary, 'y/two', {'foo': script('foo')})
    writeTap(formulary, 'homebrew/core', {'foo': script('foo')})
    f = formulary.factory('foo')
    assert f.tap is not None and f.tap.isCore
    assert f.fullName == 'foo'


def testUnavailable(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path)
    assert isinstance(formulary.loaderFor('nope'), NullLoader)
    with pytest.raises(FormulaUnavailableError) as err:
        formulary.factory('nope')
    assert str(err.value) == 'No available formula with the name "nope".'
    assert formulary.kegOnly(formulary.paths.rack('nope')) is False


# -----------------------------------
#  Loaders
# -----------------------------------

def testSameInstance(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path, API_ENABLED=True)
    writeApi(formulary, 'formula.json', [MINIMAL_DOC])
    first = formulary.factory('foo')
    assert formulary.factory('foo') is first
    assert formulary.factory('foo', 'head') is not first
    assert formulary.factory('foo', 'head').recipe is first.recipe


def testApiEndToEnd(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path, API_ENABLED=True)
    writeApi(formulary, 'formula.json', [MINIMAL_DOC])
    assert isinstance(formulary.loaderFor('foo'), FromAPILoader)
    f = formulary.resolve('foo')
    assert str(f.version) == '1.0'
    assert f.dependencies == []
    assert f.provenance == 'api'
    assert f.loadedFromApi
    assert not f.followInstalledAlias
    assert f.homepage == 'h'
    assert f.license == 'MIT'
    with pytest.raises(UnsupportedMethodError):
        f.install()


def testApiDisabled(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path, API_ENABLED=False)
    writeApi(formulary, 'formula.json', [MINIMAL_DOC])
    with pytest.raises(FormulaUnavailableError):
        formulary.factory('foo')


def testApiAlias(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path, API_ENABLED=True)
    writeApi(formulary, 'formula.json', [dict(MINIMAL_DOC, aliases=['fu'])])
    f = formulary.factory('fu')
    assert f.name == 'foo'
    assert f.aliasPath and f.aliasPath.endswith('fu')
    assert formulary.canonicalName('fu') == 'foo'


def testStub(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path, API_ENABLED=True, API_INTERNAL=True)
    writeApi(formulary, 'formula.json', [MINIMAL_DOC])
    writeApi(formulary, 'internal/packages.arm64_sonoma.json',
             {'formulae': {'foo': ['1.0_1', 2, 'abc']}})
    f = formulary.factory('foo', preferStub=True)
    assert f.provenance == 'stub'
    assert f.loadedFromStub
    assert str(f.version) == '1.0'
    assert f.revision == 1
    assert f.hasBottle()
    assert f.bottle and f.bottle.rebuild == 2
    assert f.stable and f.stable.url == 'formula-stub://foo/1.0_1'
    assert formulary.factory('foo').provenance == 'api'


def testUriRejectsNonFileScheme(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path)
    with pytest.raises(UnsupportedInstallationMethodError) as err:
        formulary.factory('https://example.com/foo.rb')
    assert 'Non-checksummed download of foo formula file' in str(err.value)


def testUriFileScheme(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path)
    src = writeFile(str(tmp_path / 'src' / 'foo.rb'), FOO_RB)
    f = formulary.factory('file://' + src)
    assert f.name == 'foo'
    assert f.path == os.path.join(formulary.paths.formulaCache, 'foo.rb')
    assert os.path.isfile(f.path)


def testPathLoader(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path)
    path = writeFile(str(tmp_path / 'foo.rb'), FOO_RB)
    f = formulary.factory(path)
    assert f.name == 'foo'
    assert f.provenance == 'path'
    assert f.tap is None
    assert f.install() == ['system "make", "install"']


def testForbidPaths(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path, FORBID_PATHS=True)
    path = writeFile(str(tmp_path / 'foo.rb'), FOO_RB)
    with pytest.raises(UnsupportedInstallationMethodError) as err:
        formulary.factory(path)
    assert 'Homebrew requires formulae to be in a tap' in str(err.value)
    # tap formulae are still fine
    writeTap(formulary, 'user/tools', {'foo': FOO_RB})
    assert formulary.factory('user/tools/foo').name == 'foo'


def testKegAndCacheLoader(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path)
    writeFile(os.path.join(formulary.paths.opt, 'foo', '.brew', 'foo.rb'),
              FOO_RB)
    writeFile(os.path.join(formulary.paths.formulaCache, 'baz.rb'),
              script('baz'))
    assert type(formulary.loaderFor('foo')).__name__ == 'FromKegLoader'
    assert type(formulary.loaderFor('baz')).__name__ == 'FromCacheLoader'
    assert formulary.factory('baz').name == 'baz'


def testBottleFallback(tmp_path: Any, capsys: Any) -> None:
    formulary = makeFormulary(tmp_path)
    writeTap(formulary, 'homebrew/core', {'foo': FOO_RB})
    bottle = writeFile(
        str(tmp_path / 'foo--1.2.arm64_sonoma.bottle.tar.gz'), 'not a tar')
    assert isinstance(formulary.loaderFor(bottle), FromBottleLoader)
    f = formulary.factory(bottle)
    assert f.name == 'foo'
    assert f.localBottlePath == bottle
    assert f.provenance == 'bottle'
    assert f.desc == 'Foo tool'  # from tap file
    assert 'Unreadable formula in' in capsys.readouterr().err


def testBottleWithoutFormulaFile(tmp_path: Any, capsys: Any) -> None:
    formulary = makeFormulary(tmp_path)
    writeTap(formulary, 'homebrew/core', {'foo': FOO_RB})
    bottle = makeBottle(str(tmp_path / 'foo--1.2.arm64_sonoma.bottle.tar.gz'),
                        {'foo/1.2/README': 'hi'})
    f = formulary.factory(bottle)
    assert f.desc == 'Foo tool'
    assert 'Falling back to non-bottle formula.' in capsys.readouterr().err


def testBottleContents(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path)
    bottle = makeBottle(str(tmp_path / 'foo--1.2.arm64_sonoma.bottle.tar.gz'), {
        'foo/1.2/.brew/foo.rb': FOO_RB.replace('Foo tool', 'From bottle'),
        'foo/1.2/INSTALL_RECEIPT.json': json.dumps(
            {'source': {'tap': 'user/tools'}}),
    })
    assert BottleArchive(bottle).names() == ('foo', 'user/tools/foo')
    f = formulary.factory(bottle)
    assert f.desc == 'From bottle'
    assert f.localBottlePath == bottle
    assert f.recipe.source == 'contents'


def testBottleNameFromArchive(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path)
    bottle = makeBottle(str(tmp_path / 'bar--1.0.arm64_sonoma.bottle.tar.gz'), {
        'foo/1.0/.brew/foo.rb': FOO_RB,
    })
    f = formulary.factory(bottle)
    assert f.name == 'foo'
    assert f.desc == 'Foo tool'
    assert f.localBottlePath == bottle


# -----------------------------------
#  Materializer
# -----------------------------------

def testNamespaceReuse(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path)
    mat = formulary.materializer
    first = mat.loadFormulaFromContents('foo', '/x/foo.rb', FOO_RB)
    second = mat.loadFormulaFromContents('foo', '/y/foo.rb', FOO_RB)
    assert first is second
    assert len(mat.namespaces) == 1
    other = mat.loadFormulaFromContents(
        'foo', '/x/foo.rb', FOO_RB.replace('1.2', '1.3'))
    assert other is not first
    assert len(mat.namespaces) == 2
    assert str(other.stable.version) == '1.3'  # type: ignore[union-attr]


def testNamespacePerPlatform(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path)
    mat = formulary.materializer
    mac = mat.loadFormulaFromContents('foo', '/x/foo.rb', FOO_RB)
    with formulary.system.simulate(os='linux'):
        linux = mat.loadFormulaFromContents('foo', '/x/foo.rb', FOO_RB)
    assert mac is not linux
    assert 'linux-only' in [x.name for x in linux.stable.dependencies]
    assert 'linux-only' not in [x.name for x in mac.stable.dependencies]


def testClassUnavailable(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path)
    contents = script('bar') + '\nclass Helper\nend\n'
    with pytest.raises(FormulaClassUnavailableError) as err:
        formulary.fromContents('foo', '/x/foo.rb', contents)
    assert err.value.className == 'Foo'
    assert err.value.classList == ['Bar', 'Helper']
    assert 'but only found: Bar, Helper' in str(err.value)
    assert formulary.materializer.namespaces == {}


def testUnreadableTearsDownNamespace(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path)
    contents = script('foo', '  frobnicate "x"')
    with pytest.raises(FormulaUnreadableError) as err:
        formulary.fromContents('foo', '/x/foo.rb', contents)
    assert "undefined method 'frobnicate'" in str(err.value)
    assert formulary.materializer.namespaces == {}


def testDeprecatedMethod(tmp_path: Any, capsys: Any) -> None:
    formulary = makeFormulary(tmp_path)
    contents = script('foo', '  sha1 "abc"')
    with pytest.raises(FormulaUnreadableError) as err:
        formulary.fromContents('foo', '/x/foo.rb', contents)
    assert 'Calling sha1 is deprecated! Use sha256 instead.' in str(err.value)
    f = formulary.fromContents('foo', '/y/foo.rb', contents + '\n',
                               ignoreErrors=True)
    assert f.name == 'foo'
    assert 'Calling sha1 is deprecated!' in capsys.readouterr().err


def testCapturedOutput(tmp_path: Any, capsys: Any) -> None:
    formulary = makeFormulary(tmp_path)
    contents = 'puts "hello from foo"\n' + script('foo')
    formulary.fromContents('foo', '/x/foo.rb', contents)
    out, err = capsys.readouterr()
    assert 'hello from foo' not in out
    assert 'Formula foo attempted to print the following while being ' \
        'loaded:\nhello from foo' in err


def testSpecFallback(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path)
    headOnly = '''
class Foo < Formula
  head "https://github.com/x/foo.git", branch: "main"
end
'''
    f = formulary.fromContents('foo', '/x/foo.rb', headOnly)
    assert f.activeSpecName == 'head'
    assert str(f.version) == 'HEAD'
    with pytest.raises(FormulaSpecificationError):
        f.activeSpecName = 'stable'
    with pytest.raises(FormulaSpecificationError):
        formulary.fromContents('bar', '/x/bar.rb', 'class Bar < Formula\nend\n')


def testService(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path)
    doc = dict(MINIMAL_DOC, service={'run': ['/x/bin/y'], 'name': 'svc'})
    f = formulary.fromJsonContents('foo', doc)
    assert f.service is not None
    assert f.service.run == ['/x/bin/y']
    assert f.service.name == 'svc'
    assert f.service.options == {}
    assert f.toDict()['service'] == {'run': ['/x/bin/y'], 'name': 'svc'}

    bare = Service(['/x/bin/z'])
    assert bare.options is None
    f.recipe.service = bare
    assert f.toDict()['service'] == {'run': ['/x/bin/z'], 'name': None}


def testServiceOptionsSubstitution(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path, API_ENABLED=True)
    writeApi(formulary, 'formula.json', [dict(MINIMAL_DOC, service={
        'run': ['$HOMEBREW_PREFIX/bin/foo'],
        'working_dir': '$HOMEBREW_PREFIX/var',
        'keep_alive': {'always': True},
    })])
    svc = formulary.factory('foo').service
    root = formulary.paths.ROOT
    assert svc is not None
    assert svc.run == [f'{root}/bin/foo']
    assert svc.options == {'working_dir': f'{root}/var',
                           'keep_alive': {'always': True}}


def testPlaceholderSubstitution(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path, API_ENABLED=True)
    home = os.path.expanduser('~')
    doc = dict(MINIMAL_DOC, caveats='See $HOME/.foo and $HOMEBREW_PREFIX/etc')
    writeApi(formulary, 'formula.json', [doc])
    expected = f'See {home}/.foo and {formulary.paths.ROOT}/etc'
    assert formulary.factory('foo').caveats == expected
    formulary.clearCache()
    assert formulary.factory('foo', 'head').caveats == expected
    assert formulary.api.formula('foo')['caveats'] == doc['caveats']


def testJsonReplay(tmp_path: Any) -> None:
    doc = dict(
        MINIMAL_DOC,
        dependencies=['bar', 'zlib'],
        build_dependencies=['cmake'],
        uses_from_macos=['zlib', {'python': 'build'}],
        uses_from_macos_bounds=[{}, {'since': 'sonoma'}],
        requirements=[
            {'name': 'codesign', 'version': None, 'contexts': []},
            {'name': 'arch', 'version': 'x86_64', 'contexts': []},
        ],
        bottle={'stable': {'rebuild': 1, 'files': {
            'arm64_sonoma': {'cellar': ':any', 'sha256': 'aaa'},
            'x86_64_linux': {'cellar': ':any', 'sha256': 'bbb'},
        }}},
        keg_only_reason={'reason': ':provided_by_macos', 'explanation': ''},
        deprecated=True, deprecation_date='2020-01-01',
        deprecation_reason='unmaintained',
        variations={'x86_64_linux': {'desc': 'linux variant'}},
    )
    formulary = makeFormulary(tmp_path)
    f = formulary.fromJsonContents('foo', doc)
    assert [x.name for x in f.dependencies] == ['bar', 'zlib', 'cmake']
    assert [x.name for x in f.runtimeDependencies] == ['bar', 'zlib']
    assert [x.name for x in f.requirements] == ['arch']
    assert f.invalidArch == ['no ARM support']
    assert f.hasBottle() and not f.hasBottle('sequoia')
    assert f.kegOnly and f.kegOnly.reason == 'provided_by_macos'
    assert f.deprecated
    assert f.deprecation and f.deprecation.message == \
        'deprecated because it is not maintained upstream'
    assert f.desc is None

    with formulary.system.simulate(os='linux', arch='intel'):
        f = formulary.fromJsonContents('foo', doc)
    assert f.desc == 'linux variant'
    assert [x.name for x in f.dependencies] == ['bar', 'zlib', 'cmake',
                                                'python']


# -----------------------------------
#  Script evaluation per platform
# -----------------------------------

def testScriptVariations(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path)
    for os_ in ('macos', 'linux'):
        for arch in ('arm', 'intel'):
            for osVersion in ('13', '14'):
                # namespaces are per os and arch, not per macOS version
                formulary.clearCache()
                with formulary.system.simulate(
                        os=os_, arch=arch, osVersion=osVersion) as system:
                    f = formulary.fromContents('foo', '/x/foo.rb', FOO_RB)
                    assertDependencies(system, f.dependencies)

    with_extra = formulary.fromContents(
        'foo', '/x/foo.rb', FOO_RB, flags=['--with-extra'])
    assert 'extra' in [x.name for x in with_extra.dependencies]
    without = formulary.fromContents('foo', '/x/foo.rb', FOO_RB)
    assert 'extra' not in [x.name for x in without.dependencies]


def assertDependencies(system: Platform, deps: list) -> None:
    names = [x.name for x in deps]
    assert 'bar' in names
    assert [x.kind for x in deps if x.name == 'cmake'] == ['build']
    assert 'extra' not in names
    assert ('linux-only' in names) == (not system.isMac)
    assert ('arm-only' in names) == system.isArm
    assert ('zlib' in names) == (not system.isMac)
    assert ('curl' in names) == (
        not system.isMac or system.osVersion == '13')


# -----------------------------------
#  Platform & cache
# -----------------------------------

def testSimulateNesting() -> None:
    system = SimulateSystem(SONOMA_ARM)
    with system.simulate(os='linux') as outer:
        assert outer == Platform('linux', 'arm', '0')
        with system.simulate(arch='intel'):
            assert system.current == Platform('linux', 'intel', '0')
            assert system.current.bottleTag == 'x86_64_linux'
        assert system.current == outer
        with pytest.raises(RuntimeError):
            with system.simulate(os='macos', arch='intel'):
                raise RuntimeError('boom')
        assert system.current == outer
    assert system.current == SONOMA_ARM
    assert not system.simulating
    with pytest.raises(ValueError):
        with system.simulate(os='windows'):
            pass


def testCacheClear() -> None:
    system = SimulateSystem(SONOMA_ARM)
    cache = FormulaCache(system)
    cache.put('api', 'foo', 1)
    cache.put('formulary_factory', 'foo', 2)
    with system.simulate(os='linux'):
        assert not cache.has('api', 'foo')
        cache.put('path', '/x/foo.rb', 3)
    cache.clear()
    assert not cache.has('api', 'foo')
    assert cache.get('formulary_factory', 'foo') == 2
    with system.simulate(os='linux'):
        assert not cache.has('path', '/x/foo.rb')

    cache = FormulaCache(system, keepFactory=False)
    cache.put('formulary_factory', 'foo', 2)
    cache.clear()
    assert not cache.has('formulary_factory', 'foo')


def testFactoryCachePerPlatform(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path, API_ENABLED=True)
    writeApi(formulary, 'formula.json', [dict(
        MINIMAL_DOC, variations={'x86_64_linux': {'desc': 'linux'}})])
    mac = formulary.factory('foo')
    with formulary.system.simulate(os='linux', arch='intel'):
        linux = formulary.factory('foo')
    assert mac is not linux
    assert mac.desc is None
    assert linux.desc == 'linux'
    formulary.clearCache()
    assert formulary.factory('foo') is mac


# -----------------------------------
#  Installed kegs & receipts
# -----------------------------------

def testResolveInstalled(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path)
    writeTap(formulary, 'user/tools', {'foo': FOO_RB})
    writeKeg(formulary, 'foo', '1.0', {'source': {'tap': 'user/tools'}})
    newest = writeKeg(formulary, 'foo', '1.10_1', {
        'source': {'tap': 'user/tools', 'spec': 'stable'},
        'installed_as_dependency': True,
    })
    f = formulary.resolve('foo')
    assert f.fullName == 'user/tools/foo'
    assert f.build is not None
    assert f.build.tabfile == os.path.join(newest, Tab.FILENAME)
    assert f.build.installedAsDependency
    assert f.anyVersionInstalled
    assert len(f.installedKegs) == 2


def testResolvePrefersOptLinkedKeg(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path)
    writeTap(formulary, 'user/tools', {'foo': FOO_RB})
    older = writeKeg(formulary, 'foo', '1.0', {'source': {'tap': 'user/tools'}})
    writeKeg(formulary, 'foo', '2.0', {'source': {'tap': 'user/tools'}})
    os.symlink(older, os.path.join(formulary.paths.opt, 'foo'))
    f = formulary.resolve('foo')
    assert f.build and f.build.tabfile == os.path.join(older, Tab.FILENAME)


def testResolveWithoutStubEntry(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path, API_ENABLED=True, API_INTERNAL=True)
    writeApi(formulary, 'formula.json', [dict(MINIMAL_DOC, keg_only_reason={
        'reason': ':provided_by_macos', 'explanation': ''})])
    f = formulary.resolve('foo')
    assert f.provenance == 'api'
    assert f.kegOnly
    assert formulary.kegOnly(formulary.paths.rack('foo'))
    # no entry in internal/packages.<tag>.json
    with pytest.raises(FormulaUnavailableError):
        formulary.resolve('foo', preferStub=True)


def testTabReadWrite(tmp_path: Any) -> None:
    path = writeFile(str(tmp_path / 'foo' / '1.0' / Tab.FILENAME), json.dumps({
        'homebrew_version': '4.0.0',
        'time': 1700000000,
        'loaded_from_api': True,
        'used_options': ['--with-extra'],
        'some_future_key': 42,
        'tapped_from': 'Homebrew/homebrew',
    }))
    tab = Tab.fromFile(path)
    assert tab.tap == 'homebrew/core'
    assert tab.spec == 'stable'
    assert tab.usedOptions == ['--with-extra']
    assert tab.unusedOptions == []
    assert not tab.pouredFromBottle
    assert 'some_future_key' not in tab.toDict()
    assert str(tab).startswith('Installed using the formulae.brew.sh API on ')
    tab.data['installed_on_request'] = True
    tab.write()
    again = Tab.fromFile(path)
    assert again.installedOnRequest
    assert again.toDict() == tab.toDict()
    assert not os.path.exists(path + '.inprogress')


def testTabHeadSpecFromKegName(tmp_path: Any) -> None:
    path = writeFile(str(tmp_path / 'foo' / 'HEAD-abc1234' / Tab.FILENAME),
                     '{}')
    assert Tab.fromFile(path).spec == 'head'


def testEmptyTab(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path)
    f = formulary.fromContents('foo', '/x/foo.rb', FOO_RB)
    tab = formulary.tabFor(f)
    assert tab.tabfile is None
    assert tab.source['path'] == '/x/foo.rb'
    assert tab.source['versions']['stable'] == '1.2'
    assert tab.data['unused_options'] == ['--with-extra']
    assert str(tab) == 'Installed'
    with pytest.raises(FormulaError):
        tab.write()


def testCreateTab(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path, API_ENABLED=True)
    writeApi(formulary, 'formula.json', [
        dict(MINIMAL_DOC, dependencies=['bar'], build_dependencies=['cmake']),
        dict(MINIMAL_DOC, name='bar', dependencies=['baz']),
        dict(MINIMAL_DOC, name='baz'),
        dict(MINIMAL_DOC, name='cmake'),
    ])
    f = formulary.factory('foo')
    tab = formulary.createTab(f)
    assert tab.tabfile == os.path.join(f.prefix, Tab.FILENAME)
    assert tab.loadedFromApi
    deps = tab.runtimeDependencies
    assert [x['full_name'] for x in deps] == ['baz', 'bar']
    assert [x['declared_directly'] for x in deps] == [False, True]
    assert deps[0]['pkg_version'] == '1.0'
    assert tab.data['built_on'] == {
        'os': 'macos', 'os_version': 'sonoma', 'arch': 'arm64'}


def testDependencyGraphCycle(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path, API_ENABLED=True)
    writeApi(formulary, 'formula.json', [
        dict(MINIMAL_DOC, dependencies=['bar']),
        dict(MINIMAL_DOC, name='bar', dependencies=['baz', 'missing']),
        dict(MINIMAL_DOC, name='baz', dependencies=['foo']),
    ])
    graph = DependencyGraph(formulary)
    nodes = graph.runtime(formulary.factory('foo'))
    assert [x.name for x in nodes] == ['baz', 'bar']  # type: ignore


CASK_DOCS = [{
    'token': 'caska',
    'name': ['Cask A'],
    'version': '2.0',
    'depends_on': {'cask': ['caskb'], 'formula': ['foo']},
    'artifacts': [
        {'app': ['A.app']},
        {'preflight': None},
        {'uninstall_postflight': None},
        {'zap': [{'trash': '~/Library/A'}]},
    ],
    'caveats': 'Installed into $HOMEBREW_PREFIX',
}, {
    'token': 'caskb',
    'version': '1.0',
}]


def testCask(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path, API_ENABLED=True)
    writeApi(formulary, 'cask.json', CASK_DOCS)
    writeApi(formulary, 'cask_renames.json', {'olda': 'caska'})
    cask = formulary.cask('olda')
    assert isinstance(cask, Cask)
    assert cask.token == 'caska'
    assert cask.fullName == 'caska'
    assert formulary.cask('caska') is cask
    assert cask.uninstallFlightBlocks
    assert cask.caveats == f'Installed into {formulary.paths.ROOT}'
    assert cask.artifactsList(uninstallOnly=True) == [
        {'app': ['A.app']},
        {'uninstall_postflight': None},
        {'zap': [{'trash': '~/Library/A'}]},
    ]


def testCaskTab(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path, API_ENABLED=True)
    writeApi(formulary, 'cask.json', CASK_DOCS)
    writeApi(formulary, 'formula.json', [MINIMAL_DOC])
    cask = formulary.cask('caska')
    tab = formulary.tabFor(cask)
    assert isinstance(tab, CaskTab)
    assert tab.tabfile is None
    assert tab.source['version'] == '2.0'
    assert tab.uninstallArtifacts == cask.artifactsList(uninstallOnly=True)
    assert tab.runtimeDependencies is None
    assert not tab.uninstallFlightBlocks
    assert tab.data['built_on'] is None
    assert str(tab) == 'Installed'

    created = formulary.createTab(cask)
    assert created.tabfile == os.path.join(
        cask.metadataMainContainerPath, CaskTab.FILENAME)
    assert created.uninstallFlightBlocks
    deps = created.runtimeDependencies
    assert deps['cask'] == [
        {'full_name': 'caskb', 'version': '1.0', 'declared_directly': True}]
    assert [x['full_name'] for x in deps['formula']] == ['foo']
    assert deps['formula'][0]['declared_directly']
    assert formulary.createTab(formulary.cask('caskb')) \
        .runtimeDependencies == {}


def testCaskTabBuiltOn(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path, API_ENABLED=True)
    writeApi(formulary, 'cask.json', CASK_DOCS)
    writeApi(formulary, 'formula.json', [MINIMAL_DOC])
    cask = formulary.cask('caska')
    created = formulary.createTab(cask)
    assert created.data['built_on'] == {
        'os': 'macos', 'os_version': 'sonoma', 'arch': 'arm64'}
    os.makedirs(cask.metadataMainContainerPath)
    created.write()
    again = formulary.tabFor(cask)
    assert again.tabfile == created.tabfile
    assert again.data['built_on'] == created.data['built_on']
    assert again.toDict() == created.toDict()


def testCaskTabDescription(tmp_path: Any) -> None:
    path = writeFile(str(tmp_path / 'caska' / '.metadata' / CaskTab.FILENAME),
                     json.dumps({
                         'time': 1700000000,
                         'loaded_from_api': True,
                         'installed_as_dependency': True,
                     }))
    tab = CaskTab.fromFile(path)
    assert tab.installedAsDependency
    assert str(tab).startswith('Installed using the formulae.brew.sh API on ')
    assert 'as dependency' not in str(tab)
    asFormula = Tab.fromDict(tab.toDict())
    assert str(asFormula).startswith('Installed as dependency using the ')


def testCaskUnavailable(tmp_path: Any) -> None:
    formulary = makeFormulary(tmp_path, API_ENABLED=True)
    with pytest.raises(FormulaError):
        formulary.cask('nope')


# -----------------------------------
#  CLI
# -----------------------------------

def testCliErrorSummary(tmp_path: Any, capsys: Any, monkeypatch: Any) -> None:
    formulary = makeFormulary(tmp_path)
    path = writeFile(str(tmp_path / 'foo.rb'), script(
        'foo', '  deprecate! date: "2020-01-01", because: "is broken"'))
    monkeypatch.setattr(Env, 'PREFIX', formulary.paths.ROOT)
    monkeypatch.setattr(Formulary, 'fromEnv', staticmethod(lambda: formulary))
    monkeypatch.setattr(sys, 'argv', ['formulary', 'info', path])
    main()
    out, err = capsys.readouterr()
    assert out.startswith('foo: stable 1.0\n')
    assert '[WARN] foo has been deprecated because it is broken' in err
    assert out.endswith('\nError summary:\n'
                        '[WARN] foo has been deprecated because it is broken\n')
