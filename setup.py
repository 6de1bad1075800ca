from setuptools import setup

setup(
    name="kmp-migrate",
    version="0.1.0",
    description="Add a Kotlin Multiplatform layout to an existing Android or iOS project.",
    package_dir={"": "src"},
    py_modules=["kmp_merge", "kmp_facts"],
    packages=["kmp_init"],
    package_data={"kmp_init": ["templates/*.txt"]},
    install_requires=["httpx"],
    extras_require={"test": ["pytest", "approvaltests"]},
    entry_points={"console_scripts": ["kmp-init=kmp_init:main"]},
    python_requires=">=3.10",
)
