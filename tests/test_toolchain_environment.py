"""
test_toolchain_environment: build environment paths and the staged pipeline.

The pipeline runs in dry-run mode with a command recorder, so the tests check
the order and shape of the configure/make invocations without building anything.
"""
import os
import stat

import pytest

import common
import modifier
import toolchain_environment as toolchain


def _touch(path: str) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    open(path, "w").close()


@pytest.fixture
def musl_env(config, recorder):
    return toolchain.environment(config, "aarch64", "musl")


@pytest.fixture
def gnu_env(config, recorder):
    return toolchain.environment(config, "aarch64", "glibc")


def _pipeline(env, force=False):
    return toolchain.toolchain_pipeline(env, modifier.get_modifier(env.target), force)


class TestEnvironment:
    def test_paths(self, musl_env, project):
        prefix = str(project / "artifacts" / "aarch64-musl")
        assert musl_env.target == "aarch64-linux-musl"
        assert musl_env.tool_prefix == "aarch64-linux-musl-"
        assert musl_env.prefix == prefix
        assert musl_env.lib_prefix == os.path.join(prefix, "aarch64-linux-musl")
        assert musl_env.bin_dir == os.path.join(prefix, "bin")
        assert musl_env.build_root == str(project / "build" / "musl-toolchain")
        assert musl_env.source_dir_list["gcc"] == str(project / "build" / "musl-toolchain" / "gcc-15.2.0")
        assert musl_env.get_tool_path("gcc") == os.path.join(prefix, "bin", "aarch64-linux-musl-gcc")

    def test_glibc_alias(self, gnu_env, project):
        assert gnu_env.libc == "gnu"
        assert gnu_env.libc_package == "glibc"
        assert gnu_env.prefix == str(project / "artifacts" / "aarch64-gnu")
        assert gnu_env.build_root == str(project / "build" / "glibc-toolchain")
        assert "glibc" in gnu_env.package_list
        assert "musl" not in gnu_env.package_list

    def test_build_triplet_from_host_gcc(self, musl_env):
        assert musl_env.build == "x86_64-linux-gnu"

    def test_make_command_on_macos(self, config, recorder, monkeypatch):
        monkeypatch.setattr(common, "get_platform", lambda: "macos")
        env = toolchain.environment(config, "aarch64", "musl")
        assert env.make_command == "gmake"

    def test_is_built(self, musl_env):
        assert not musl_env.is_built()
        for tool in ("gcc", "g++", "ar", "ld"):
            _touch(musl_env.get_tool_path(tool))
        assert musl_env.is_built()

    def test_register_in_env(self, musl_env, monkeypatch):
        monkeypatch.setenv("PATH", "/usr/bin")
        musl_env.register_in_env()
        assert os.environ["PATH"] == f"{musl_env.bin_dir}:/usr/bin"

    def test_check_packages_missing(self, musl_env, packages):
        os.remove(packages["musl"])
        with pytest.raises(common.missing_package_error, match="musl-1.2.5.tar.gz"):
            musl_env.check_packages()

    def test_extract_skips_existing_source(self, musl_env, packages, recorder):
        os.makedirs(musl_env.source_dir_list["gcc"])
        musl_env.extract("gcc")
        musl_env.extract("musl")
        assert recorder.matching("tar -xf") == [f"tar -xf {packages['musl']} -C {musl_env.build_root}"]

    def test_download_gcc_prerequisites(self, musl_env, recorder, dry_run):
        musl_env.download_gcc_prerequisites()
        assert recorder.matching("contrib/download_prerequisites")

    def test_make_and_install_commands(self, musl_env, recorder):
        musl_env.make("all-gcc")
        musl_env.install()
        musl_env.configure("--prefix=/x")
        assert recorder.commands[-3:] == ["make all-gcc -j 4", "make install -j 4", "../configure --prefix=/x LD_LIBRARY_PATH="]


class TestGeneratedFiles:
    def test_env_script_is_relocatable(self, musl_env):
        script = musl_env.get_env_script()
        assert script.startswith("#!/bin/bash\n")
        assert 'TOOLCHAIN_ROOT="$(cd "$(dirname "${BASH_SOURCE[0]}")" && pwd)"' in script
        assert musl_env.prefix not in script
        assert 'export SYSROOT="$TOOLCHAIN_ROOT/aarch64-linux-musl"' in script
        assert 'export CROSS_COMPILE="aarch64-linux-musl-"' in script
        assert 'export CC="$TOOLCHAIN_BIN/${CROSS_COMPILE}gcc"' in script
        assert 'export CXX="$TOOLCHAIN_BIN/${CROSS_COMPILE}g++"' in script
        for variable in ("ARCH", "TOOLCHAIN_TYPE", "TARGET", "TOOLCHAIN_BIN", "TOOLCHAIN_LIB", "TOOLCHAIN_INCLUDE", "PATH", "CFLAGS", "CXXFLAGS", "LDFLAGS"):
            assert f"export {variable}=" in script

    def test_write_env_script(self, musl_env):
        musl_env.write_env_script()
        mode = os.stat(musl_env.env_script_path).st_mode
        assert mode & stat.S_IXUSR

    def test_info_file(self, musl_env):
        info = musl_env.get_info()
        assert "# Source date epoch: 1700000000" in info
        assert "# Generated: 2023-11-14T22:13:20Z" in info
        assert "TARGET=aarch64-linux-musl" in info
        assert "GCC_VERSION=15.2.0" in info
        assert "MUSL_VERSION=1.2.5" in info
        assert f"CC={musl_env.get_tool_path('gcc')}" in info


class TestGlibcLinkerScripts:
    def test_absolute_paths_are_removed(self, gnu_env):
        lib_dir = os.path.join(gnu_env.lib_prefix, "lib")
        os.makedirs(lib_dir)
        script = (
            "/* GNU ld script\n   Use the shared library, but some functions are only in\n   the static library. */\n"
            "OUTPUT_FORMAT(elf64-littleaarch64)\n"
            f"GROUP ( {lib_dir}/libc.so.6 {lib_dir}/libc_nonshared.a  AS_NEEDED ( {lib_dir}/ld-linux-aarch64.so.1 ) )\n"
        )
        with open(os.path.join(lib_dir, "libc.so"), "w") as file:
            file.write(script)
        with open(os.path.join(lib_dir, "libm.so.6"), "wb") as file:
            file.write(b"\x7fELF")
        os.symlink("libm.so.6", os.path.join(lib_dir, "libm.so"))

        gnu_env.change_glibc_ldscript()

        with open(os.path.join(lib_dir, "libc.so")) as file:
            content = file.read()
        assert lib_dir not in content
        assert "GROUP ( libc.so.6 libc_nonshared.a  AS_NEEDED ( ld-linux-aarch64.so.1 ) )" in content
        assert os.path.islink(os.path.join(lib_dir, "libm.so"))
        with open(os.path.join(lib_dir, "libm.so.6"), "rb") as file:
            assert file.read() == b"\x7fELF"

    def test_dry_run_leaves_scripts_alone(self, gnu_env, dry_run):
        gnu_env.change_glibc_ldscript()
        assert not os.path.exists(gnu_env.lib_prefix)


class TestPipelineOptions:
    def test_kernel_arch(self, config, recorder):
        env = toolchain.environment(config, "x86_64", "musl")
        assert _pipeline(env).linux_option[0] == "ARCH=x86"
        env = toolchain.environment(config, "aarch64", "musl")
        assert _pipeline(env).linux_option[0] == "ARCH=arm64"

    def test_unknown_kernel_arch(self, config, recorder):
        config.supported_arch_list.append("sparc64")
        env = toolchain.environment(config, "sparc64", "musl")
        with pytest.raises(common.config_error):
            toolchain.toolchain_pipeline(env)

    def test_aarch64_modifier(self, musl_env):
        pipeline = _pipeline(musl_env)
        assert "--enable-fix-cortex-a53-843419" in pipeline.gcc_option
        assert "--enable-fix-cortex-a53-843419" in pipeline.gcc_stage1_option

    def test_no_modifier_for_x86_64(self, config, recorder):
        env = toolchain.environment(config, "x86_64", "musl")
        assert modifier.get_modifier(env.target) is None
        assert "--enable-fix-cortex-a53-843419" not in _pipeline(env).gcc_option

    def test_modifier_registry_names(self):
        assert "aarch64-linux-musl" in modifier.modifier_list
        assert "aarch64-linux-gnu" in modifier.modifier_list

    def test_musl_disables_sanitizer(self, musl_env, gnu_env):
        assert "--disable-libsanitizer" in _pipeline(musl_env).gcc_option
        assert "--disable-libsanitizer" not in _pipeline(gnu_env).gcc_option

    def test_musl_libc_option(self, musl_env):
        option = _pipeline(musl_env).libc_option
        assert f"--prefix={musl_env.lib_prefix}" in option
        assert f"--syslibdir={musl_env.lib_prefix}/lib" in option
        assert "CROSS_COMPILE=aarch64-linux-musl-" in option
        assert "CC=aarch64-linux-musl-gcc" in option

    def test_glibc_libc_option(self, gnu_env):
        option = _pipeline(gnu_env).libc_option
        assert "--host=aarch64-linux-gnu" in option
        assert "--build=x86_64-linux-gnu" in option
        assert f"--with-headers={gnu_env.lib_prefix}/include" in option


class TestPipelineBuild:
    def test_musl_stage_order(self, musl_env, packages, recorder, dry_run):
        assert _pipeline(musl_env).build()

        assert len(recorder.matching("tar -xf")) == 4
        binutils = recorder.index("--disable-multilib LD_LIBRARY_PATH=")
        stage1 = recorder.index("--with-newlib")
        headers = recorder.index("headers_install")
        musl = recorder.index("CC=aarch64-linux-musl-gcc")
        final = recorder.index("--enable-languages=c,c++")
        check = recorder.index("aarch64-linux-musl-gcc --version")
        assert binutils < stage1 < headers < musl < final < check
        assert recorder.index("tar -xf") < binutils
        assert "make all-gcc all-target-libgcc -j 4" in recorder.commands
        assert "make install-gcc install-target-libgcc -j 4" in recorder.commands
        assert recorder.commands[headers] == f"make ARCH=arm64 INSTALL_HDR_PATH={musl_env.lib_prefix} headers_install -j 4"

    def test_glibc_stage_order(self, gnu_env, packages, recorder, dry_run):
        assert _pipeline(gnu_env).build()

        stage1 = recorder.index("--with-newlib")
        headers = recorder.index("headers_install")
        glibc_headers = recorder.index("make install-headers")
        libgcc = recorder.index("make all-target-libgcc")
        glibc_configure = [i for i, command in enumerate(recorder.commands) if "--with-headers=" in command]
        final = recorder.index("--enable-languages=c,c++")
        assert "make all-gcc -j 4" in recorder.commands
        assert "make install-gcc -j 4" in recorder.commands
        assert len(glibc_configure) == 2
        assert "libc_cv_forced_unwind=yes" in recorder.commands[glibc_configure[0]]
        assert stage1 < headers < glibc_configure[0] < glibc_headers < libgcc < glibc_configure[1] < final

    def test_missing_package_fails_before_any_command(self, musl_env, packages, recorder, dry_run):
        os.remove(packages["linux"])
        recorder.commands.clear()
        with pytest.raises(common.missing_package_error):
            _pipeline(musl_env).build()
        assert recorder.commands == []

    def test_complete_toolchain_is_noop(self, musl_env, packages, recorder, dry_run):
        for tool in ("gcc", "g++", "ar", "ld"):
            _touch(musl_env.get_tool_path(tool))
        recorder.commands.clear()
        assert not _pipeline(musl_env).build()
        assert recorder.commands == []

    def test_force_rebuilds_complete_toolchain(self, musl_env, packages, recorder, dry_run):
        for tool in ("gcc", "g++", "ar", "ld", "as"):
            _touch(musl_env.get_tool_path(tool))
        assert _pipeline(musl_env, force=True).build()
        assert len(recorder.matching("../configure")) == 4

    def test_stage_markers_skip_completed_stages(self, musl_env, packages, recorder, dry_run):
        _touch(musl_env.get_tool_path("ld"))
        _touch(musl_env.get_tool_path("as"))
        _touch(musl_env.get_tool_path("gcc"))
        _touch(os.path.join(musl_env.lib_prefix, "include", "linux", "version.h"))

        _pipeline(musl_env).build()

        configure = recorder.matching("../configure")
        assert len(configure) == 2
        assert "CC=aarch64-linux-musl-gcc" in configure[0]
        assert "--enable-languages=c,c++" in configure[1]
        assert recorder.matching("headers_install") == []

    def test_glibc_reconfigures_stage1_without_build_tree(self, gnu_env, packages, recorder, dry_run):
        for tool in ("ld", "as", "gcc"):
            _touch(gnu_env.get_tool_path(tool))
        _touch(os.path.join(gnu_env.lib_prefix, "include", "linux", "version.h"))

        _pipeline(gnu_env).build()

        assert recorder.index("--with-newlib") < recorder.index("make all-target-libgcc")
        assert recorder.matching("headers_install") == []

    def test_glibc_reuses_stage1_build_tree(self, gnu_env, packages, recorder, dry_run):
        for tool in ("ld", "as", "gcc"):
            _touch(gnu_env.get_tool_path(tool))
        _touch(os.path.join(gnu_env.lib_prefix, "include", "linux", "version.h"))
        _touch(os.path.join(gnu_env.source_dir_list["gcc"], "build", "Makefile"))

        _pipeline(gnu_env).build()

        assert recorder.matching("--with-newlib") == []
        assert recorder.matching("make all-target-libgcc")

    def test_stage_list_markers(self, gnu_env):
        stages = _pipeline(gnu_env).get_stage_list()
        assert [name for name, _, _ in stages] == ["binutils", "gcc stage 1", "linux headers", "glibc", "gcc"]
        assert stages[1][1] == [gnu_env.get_tool_path("gcc"), os.path.join(gnu_env.source_dir_list["gcc"], "build", "Makefile")]
        assert stages[3][1] == [os.path.join(gnu_env.lib_prefix, "lib", "libc.so.6")]

    def test_missing_marker_fails_stage(self, musl_env, packages, recorder, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        with pytest.raises(common.build_step_error, match="binutils"):
            _pipeline(musl_env).build()
        assert recorder.matching("--with-newlib") == []
