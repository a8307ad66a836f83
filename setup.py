import os
import shutil
import subprocess
import sys
from pathlib import Path

from setuptools import find_packages, setup
from setuptools.command.build_py import build_py

LIB_NAME = "libvsag_wrapper.dylib" if sys.platform == "darwin" else "libvsag_wrapper.so"


class BuildPyWithLibrary(build_py):
    """Build the VSAG C wrapper via CMake if needed and copy it into the package."""

    def run(self):
        repo_root = Path(__file__).resolve().parent
        build_dir = repo_root / "build"
        lib_path = build_dir / "lib" / LIB_NAME
        package_lib_path = repo_root / "src" / "vsagpy" / LIB_NAME

        env_path = os.environ.get("VSAG_LIBRARY_PATH")
        if env_path and Path(env_path).is_file():
            lib_path = Path(env_path)
            self.announce(f"Using VSAG wrapper library from VSAG_LIBRARY_PATH={env_path}", level=3)
        elif lib_path.exists():
            self.announce("Using prebuilt VSAG wrapper library", level=3)
        elif (repo_root / "vsag-sys" / "CMakeLists.txt").exists():
            self.announce("Building VSAG wrapper library via cmake", level=3)
            subprocess.check_call([
                "cmake", "-S", str(repo_root / "vsag-sys"), "-B", str(build_dir),
                f"-DCMAKE_INSTALL_PREFIX={build_dir}",
            ])
            subprocess.check_call(["cmake", "--build", str(build_dir), "--target", "install"])
        else:
            lib_path = None
            self.announce(
                f"{LIB_NAME} not found; set VSAG_LIBRARY_PATH at runtime to point at it", level=3
            )

        if lib_path is not None:
            package_lib_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(lib_path, package_lib_path)
            self.announce(f"Copied {lib_path} -> {package_lib_path}", level=3)

        super().run()


setup(
    name="vsagpy",
    version="0.1.0",
    description="Python bindings for the VSAG approximate nearest neighbor index",
    package_dir={"": "src"},
    packages=find_packages("src"),
    package_data={"vsagpy": ["*.so", "*.dylib"]},
    python_requires=">=3.9",
    install_requires=[
        "cffi>=1.15",
        "numpy>=1.21",
    ],
    extras_require={
        "test": ["pytest>=7"],
    },
    cmdclass={"build_py": BuildPyWithLibrary},
)
