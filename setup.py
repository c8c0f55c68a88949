from setuptools import setup

setup(
    name='atmfjstc-scrap-packed',
    version='1.0.0',

    author_email='atmfjstc@protonmail.com',

    package_dir={'': 'src'},
    packages=['atmfjstc.lib.scrap_packed'],

    install_requires=[
    ],

    zip_safe=True,

    description="Engine for reading and editing Scrapland 'packed' (BFPK) archives",

    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Topic :: System :: Archiving",
        "Typing :: Typed",
    ],
    python_requires='>=3.7',
)
